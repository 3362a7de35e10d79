"""Wires live delivery, the event store, search and the entity cache together."""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple

from killfeed_client.client_config import FeedSettings
from killfeed_client.entity_cache import EntityResolutionCache
from killfeed_client.event_store import EventStore
from killfeed_client.logging_utils import get_logger
from killfeed_client.models import KillEvent, MalformedEventError, StoreChange
from killfeed_client.reconnection import ReconnectionController
from killfeed_client.scroll_trigger import ScrollMetrics, ScrollTrigger
from killfeed_client.search_overlay import SearchOverlay
from killfeed_client.status_presenter import banner_visible, format_status
from killfeed_client.upstream import bridge_member, dispatch

_LOGGER = get_logger("FeedController")

FeedListener = Callable[[StoreChange], None]
_CLEAR = object()


class FeedController:
    """Single owner of the live/search view state exposed to the UI."""

    def __init__(
        self,
        store: EventStore,
        search: SearchOverlay,
        cache: EntityResolutionCache,
        *,
        reconnection: Optional[ReconnectionController] = None,
        settings: Optional[FeedSettings] = None,
    ) -> None:
        self.store = store
        self.search = search
        self.cache = cache
        self.reconnection = reconnection
        self._settings = settings or FeedSettings()
        self._queue: Deque[Tuple[Any, str]] = deque()
        self._drain_task: Optional["asyncio.Future[None]"] = None
        self._listeners: List[FeedListener] = []
        self._detach: List[Callable[[], Any]] = []
        self._closed = False
        self._detach.append(store.subscribe(self._forward_live))
        self._detach.append(search.subscribe(self._forward_search))
        self.scroll_trigger = ScrollTrigger(
            is_loading=self.is_loading,
            has_more=self.has_more,
            on_trigger=lambda: dispatch(self.load_more()),
        )

    # View state -----------------------------------------------------------

    @property
    def mode(self) -> str:
        return "search" if self.search.active else "live"

    def visible_events(self) -> List[KillEvent]:
        if self.search.active:
            return self.search.results
        return self.store.ui_events

    def is_loading(self) -> bool:
        if self.search.active:
            return self.search.searching or self.search.loading_more
        return self.store.loading_more or self.store.loading_initial

    def has_more(self) -> bool:
        if self.search.active:
            return self.search.has_more
        return self.store.has_more

    def status_text(self) -> str:
        if self.reconnection is None:
            return ""
        return format_status(self.reconnection.state)

    def show_status_banner(self) -> bool:
        if self.reconnection is None:
            return False
        return banner_visible(self.reconnection.state)

    def subscribe(self, listener: FeedListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                _LOGGER.exception("Feed listener failed on %s", change.kind)

    def _forward_live(self, change: StoreChange) -> None:
        # Live changes keep accumulating while search is shown; the view only hears about them in live mode.
        if not self.search.active:
            self._emit(change)

    def _forward_search(self, change: StoreChange) -> None:
        if change.kind == "exit":
            self._emit(StoreChange(kind="refresh", event_ids=tuple(event.id for event in self.store.ui_events)))
            return
        self._emit(change)

    # Startup and upstream wiring -----------------------------------------

    async def start(self) -> bool:
        self.cache.load()
        if self.reconnection is not None:
            self.reconnection.start()
        return await self.store.load_initial(self._settings.initial_limit)

    def attach(self, upstream: Any) -> List[str]:
        """Register directly on an asyncio upstream; returns the hooked callbacks."""
        hooked: List[str] = []
        registrations: List[Tuple[str, Callable[..., Any]]] = [
            ("on_live_event", self.on_live_event),
            ("on_definitions_updated", lambda *_args: self.on_definitions_updated()),
        ]
        if self.reconnection is not None:
            registrations.append(("on_connection_status", self.reconnection.handle_status))
        for name, handler in registrations:
            register = bridge_member(upstream, name)
            if register is None:
                _LOGGER.debug("Bridge has no %s; skipping", name)
                continue
            unsubscribe = register(handler)
            if callable(unsubscribe):
                self._detach.append(unsubscribe)
            hooked.append(name)
        return hooked

    # Live delivery ----------------------------------------------------------

    def on_live_event(self, payload: Any, source: str = "local") -> bool:
        """Queue one live delivery; `None` clears the feed. Returns False when dropped."""
        if self._closed:
            return False
        if payload is None:
            self._queue.append((_CLEAR, source))
        else:
            try:
                event = KillEvent.from_payload(payload)
            except MalformedEventError as exc:
                _LOGGER.warning("Dropped malformed live event from %s: %s", source, exc)
                return False
            self._queue.append((event, source))
        self._ensure_draining()
        return True

    def _ensure_draining(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _LOGGER.debug("No running loop; %d live events wait for drain()", len(self._queue))
            return
        self._drain_task = loop.create_task(self._drain_queue())

    async def _drain_queue(self) -> None:
        while self._queue and not self._closed:
            item, source = self._queue.popleft()
            if item is _CLEAR:
                _LOGGER.debug("Upstream requested a feed clear")
                self.store.clear()
                continue
            try:
                await self.cache.resolve_events([item])
            except Exception as exc:  # lazy lookups cover names the eager pass missed
                _LOGGER.warning("Eager resolution for live event %s failed: %s", item.id, exc)
            if self._closed:
                return
            self.store.ingest(item, source)  # type: ignore[arg-type]

    async def drain(self) -> None:
        """Wait until every queued live delivery has been applied."""
        while self._queue or (self._drain_task is not None and not self._drain_task.done()):
            if self._drain_task is None or self._drain_task.done():
                self._drain_task = asyncio.ensure_future(self._drain_queue())
            await self._drain_task

    # Pagination, search and resync -----------------------------------------

    async def load_more(self) -> int:
        if self.search.active:
            return await self.search.load_more_search()
        return await self.store.load_more(self._settings.page_size)

    def on_scroll(self, metrics: ScrollMetrics) -> bool:
        return self.scroll_trigger.on_scroll(metrics)

    def set_search_query(self, text: str) -> None:
        self.search.set_query(text)

    async def scroll_to_top(self) -> bool:
        """Returns True when the store resynced instead of a plain scroll."""
        if self.search.active:
            return False
        return await self.store.reset_to_recent(
            threshold=self._settings.reset_threshold, limit=self._settings.reset_limit
        )

    # Definitions ------------------------------------------------------------

    def on_definitions_updated(self) -> None:
        dispatch(self.refresh_definitions())

    async def refresh_definitions(self) -> int:
        """Drop cached names and re-resolve the live window, plus search results while searching."""
        self.cache.invalidate()
        events = self.store.ui_events
        if self.search.active:
            live_ids = {event.id for event in events}
            events.extend(event for event in self.search.results if event.id not in live_ids)
        try:
            count = await self.cache.resolve_events(events)
        except Exception as exc:  # stale names stay until lazy lookups land
            _LOGGER.warning("Re-resolving %d events after definitions update failed: %s", len(events), exc)
            count = 0
        self._emit(StoreChange(kind="refresh", event_ids=tuple(event.id for event in events)))
        return count

    # Teardown ---------------------------------------------------------------

    def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        while self._detach:
            unsubscribe = self._detach.pop()
            try:
                unsubscribe()
            except Exception as exc:
                _LOGGER.debug("Unsubscribe failed during teardown: %s", exc)
        self.store.teardown()
        self.search.teardown()
        if self.reconnection is not None:
            self.reconnection.teardown()
        self.cache.flush()
        self._listeners.clear()
