"""Paginated full-text search results, shown instead of the live feed."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Sequence

from killfeed_client.logging_utils import get_logger
from killfeed_client.models import KillEvent, StoreChange
from killfeed_client.timers import AfterCancelFn, AfterFn, TimerGroup
from killfeed_client.upstream import EventPage, UpstreamUnavailable, bridge_member, dispatch, maybe_await, require_member

_LOGGER = get_logger("SearchOverlay")

SEARCH_DEBOUNCE_MS = 300
SEARCH_PAGE_SIZE = 25
SEARCH_COOLDOWN_MS = 5000

PrepareFn = Callable[[Sequence[KillEvent]], Awaitable[Any]]
SpawnFn = Callable[[Coroutine[Any, Any, Any]], Any]
SearchListener = Callable[[StoreChange], None]


class SearchOverlay:
    """Independent read path driven by a debounced query."""

    def __init__(
        self,
        upstream: Any,
        *,
        after: AfterFn,
        after_cancel: AfterCancelFn,
        prepare: Optional[PrepareFn] = None,
        page_size: int = SEARCH_PAGE_SIZE,
        debounce_ms: int = SEARCH_DEBOUNCE_MS,
        cooldown_ms: int = SEARCH_COOLDOWN_MS,
        spawn: Optional[SpawnFn] = None,
    ) -> None:
        self._upstream = upstream
        self._prepare = prepare
        self._page_size = max(1, int(page_size))
        self._debounce_ms = int(debounce_ms)
        self._cooldown_ms = int(cooldown_ms)
        self._spawn = spawn or dispatch
        self._timers = TimerGroup(after=after, after_cancel=after_cancel)

        self._active = False
        self._query = ""
        self._results: List[KillEvent] = []
        self._has_more = False
        self._searching = False
        self._loading_more = False
        self._generation = 0
        self._listeners: List[SearchListener] = []

    @property
    def active(self) -> bool:
        return self._active

    @property
    def query(self) -> str:
        return self._query

    @property
    def results(self) -> List[KillEvent]:
        return list(self._results)

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def searching(self) -> bool:
        return self._searching

    @property
    def loading_more(self) -> bool:
        return self._loading_more

    @property
    def available(self) -> bool:
        return bridge_member(self._upstream, "search_events") is not None

    def subscribe(self, listener: SearchListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                _LOGGER.exception("Search listener failed on %s", change.kind)

    # Query handling -------------------------------------------------------

    def set_query(self, text: str) -> None:
        """Debounced entry point for query-text changes."""
        query = (text or "").strip()
        if not query:
            self.exit_search()
            return
        self._timers.schedule("debounce", self._debounce_ms, lambda: self._spawn(self.search(query)))

    def exit_search(self) -> None:
        self._timers.cancel("debounce")
        self._timers.cancel("cooldown")
        was_active = self._active
        self._generation += 1
        self._active = False
        self._query = ""
        self._results = []
        self._has_more = False
        self._searching = False
        if was_active:
            _LOGGER.debug("Search mode exited; live feed restored")
            self._notify(StoreChange(kind="exit"))

    async def search(self, query: str) -> bool:
        query = (query or "").strip()
        if not query:
            self.exit_search()
            return False
        try:
            fetch = require_member(self._upstream, "search_events")
        except UpstreamUnavailable as exc:
            _LOGGER.debug("Search disabled: %s", exc)
            return False
        self._timers.cancel("debounce")
        self._timers.cancel("cooldown")
        self._generation += 1
        generation = self._generation
        self._active = True
        self._query = query
        self._searching = True
        try:
            raw = await maybe_await(fetch(query, self._page_size, 0))
            page = EventPage.from_result(raw, context="search_events")
            events = self._unique(page.events)
            await self._run_prepare(events)
        except Exception as exc:  # a failed search shows "no results", not an error
            if generation != self._generation:
                return False
            _LOGGER.warning("Search for %r failed: %s", query, exc)
            self._results = []
            self._has_more = False
            self._searching = False
            self._arm_cooldown()
            self._notify(StoreChange(kind="search"))
            return False
        if generation != self._generation:
            _LOGGER.debug("Discarding stale results for %r", query)
            return False
        self._results = events
        self._has_more = page.has_more
        self._searching = False
        self._notify(StoreChange(kind="search", event_ids=tuple(event.id for event in events), scroll_to_top=True))
        return True

    async def load_more_search(self) -> int:
        if not self._active or self._searching or self._loading_more or not self._has_more:
            return 0
        fetch = bridge_member(self._upstream, "search_events")
        if fetch is None:
            return 0
        generation = self._generation
        offset = len(self._results)
        self._loading_more = True
        try:
            try:
                raw = await maybe_await(fetch(self._query, self._page_size, offset))
                page = EventPage.from_result(raw, context="search_events")
            except Exception as exc:  # same cooldown policy as live pagination
                if generation == self._generation:
                    _LOGGER.warning("Loading more search results at offset %d failed: %s", offset, exc)
                    self._has_more = False
                    self._arm_cooldown()
                return 0
            if generation != self._generation:
                return 0
            known = {event.id for event in self._results}
            fresh = [event for event in self._unique(page.events) if event.id not in known]
            await self._run_prepare(fresh)
            if generation != self._generation:
                return 0
            self._results.extend(fresh)
            self._has_more = page.has_more
            if fresh:
                self._notify(StoreChange(kind="append", event_ids=tuple(event.id for event in fresh)))
            return len(fresh)
        finally:
            self._loading_more = False

    def _arm_cooldown(self) -> None:
        generation = self._generation

        def _rearm() -> None:
            if generation == self._generation and self._active:
                self._has_more = True

        self._timers.schedule("cooldown", self._cooldown_ms, _rearm)

    @staticmethod
    def _unique(events: Sequence[KillEvent]) -> List[KillEvent]:
        seen: set[str] = set()
        unique: List[KillEvent] = []
        for event in events:
            if event.id not in seen:
                seen.add(event.id)
                unique.append(event)
        return unique

    async def _run_prepare(self, events: Sequence[KillEvent]) -> None:
        if not events or self._prepare is None:
            return
        try:
            await self._prepare(events)
        except Exception as exc:  # names fall back lazily when eager resolution fails
            _LOGGER.warning("Eager preparation of %d search results failed: %s", len(events), exc)

    def teardown(self) -> None:
        self._timers.close()
        self._generation += 1
        self._listeners.clear()
