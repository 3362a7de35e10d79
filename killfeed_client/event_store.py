"""Merged, windowed view over the local and server kill event streams.

`ui_events` is newest-first and never longer than `max_ui_events`. Rows only
leave from the tail (oldest end); each eviction adds the evicted count to
`window_offset`, so `window_offset + len(ui_events)` is always the position
reached in the backward-paginated stream.
"""
from __future__ import annotations

from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from killfeed_client.debug_config import DebugConfig
from killfeed_client.logging_utils import get_logger
from killfeed_client.models import EventOrigin, KillEvent, StoreChange
from killfeed_client.timers import AfterCancelFn, AfterFn, FrameScheduler, TimerGroup
from killfeed_client.upstream import EventPage, UpstreamUnavailable, bridge_member, maybe_await, require_member

_LOGGER = get_logger("EventStore")

MAX_UI_EVENTS = 250
HIGHLIGHT_MS = 1000
PAGINATION_COOLDOWN_MS = 5000
RESET_THRESHOLD = 200
RESET_LIMIT = 100

PrepareFn = Callable[[Sequence[KillEvent]], Awaitable[Any]]
StoreListener = Callable[[StoreChange], None]


class EventStore:
    """Single source of truth for the events visible in the live feed."""

    def __init__(
        self,
        upstream: Any,
        *,
        after: AfterFn,
        after_cancel: AfterCancelFn,
        prepare: Optional[PrepareFn] = None,
        max_ui_events: int = MAX_UI_EVENTS,
        highlight_ms: int = HIGHLIGHT_MS,
        pagination_cooldown_ms: int = PAGINATION_COOLDOWN_MS,
        debug_config: Optional[DebugConfig] = None,
    ) -> None:
        if max_ui_events < 1:
            raise ValueError("max_ui_events must be positive")
        self._upstream = upstream
        self._prepare = prepare
        self._max_ui_events = int(max_ui_events)
        self._highlight_ms = int(highlight_ms)
        self._cooldown_ms = int(pagination_cooldown_ms)
        self._debug = debug_config or DebugConfig()
        self._timers = TimerGroup(after=after, after_cancel=after_cancel)
        self._frames = FrameScheduler(self._timers)

        self._events: List[KillEvent] = []
        self._window_offset = 0
        self._has_more = True
        self._loading_more = False
        self._loading_initial = False
        # bumped whenever the window is replaced or cleared; in-flight pages from an older window are dropped
        self._generation = 0
        self._recently_updated: set[str] = set()
        self._listeners: List[StoreListener] = []

    # Read API -------------------------------------------------------------

    @property
    def ui_events(self) -> List[KillEvent]:
        return list(self._events[: self._max_ui_events])

    @property
    def window_offset(self) -> int:
        return self._window_offset

    @property
    def true_offset(self) -> int:
        return self._window_offset + len(self._events)

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def loading_more(self) -> bool:
        return self._loading_more

    @property
    def loading_initial(self) -> bool:
        return self._loading_initial

    @property
    def max_ui_events(self) -> int:
        return self._max_ui_events

    @property
    def eviction_pending(self) -> bool:
        return self._frames.pending("evict")

    def is_recently_updated(self, event_id: str) -> bool:
        return event_id in self._recently_updated

    def get_event(self, event_id: str) -> Optional[KillEvent]:
        index = self._index_of(event_id)
        if index is None or index >= self._max_ui_events:
            return None
        return self._events[index]

    def stats(self) -> Dict[str, Any]:
        visible = self.ui_events
        sources: Counter[str] = Counter()
        for event in visible:
            for flag, enabled in event.metadata.to_dict().items():
                if enabled:
                    sources[flag] += 1
        stamps = sorted(event.occurred_at for event in visible)
        return {
            "ui_events": len(visible),
            "window_offset": self._window_offset,
            "has_more": self._has_more,
            "player_events": sum(1 for event in visible if event.is_player_involved),
            "sources": dict(sources),
            "oldest_event": stamps[0].isoformat() if stamps else None,
            "newest_event": stamps[-1].isoformat() if stamps else None,
        }

    # Observers ------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
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
                _LOGGER.exception("Store listener failed on %s", change.kind)

    # Initial load and resync ----------------------------------------------

    async def load_initial(self, limit: int) -> bool:
        if self._loading_initial:
            _LOGGER.debug("Initial load already in flight; ignoring request for %d events", limit)
            return False
        try:
            fetch = require_member(self._upstream, "get_recent_events")
        except UpstreamUnavailable as exc:
            _LOGGER.warning("Live history disabled: %s", exc)
            self._replace_window([], has_more=False)
            return False
        self._loading_initial = True
        generation = self._generation
        try:
            try:
                raw = await maybe_await(fetch(limit))
                events = EventPage.from_result(raw, context="get_recent_events").events
            except Exception as exc:  # upstream read failures never wedge the feed
                if self._generation != generation:
                    return False
                _LOGGER.warning("Initial event load failed: %s", exc)
                self._replace_window([], has_more=False)
                self._arm_pagination_cooldown()
                return False
            events = self._dedupe(events)[: max(0, limit)]
            await self._run_prepare(events)
            has_more = await self._probe_more(len(events))
            if self._generation != generation:
                _LOGGER.debug("Window replaced during initial load; dropped %d events", len(events))
                return False
            self._replace_window(events, has_more=has_more)
            _LOGGER.debug("Initial load: %d events, has_more=%s", len(events), has_more)
            return True
        finally:
            self._loading_initial = False

    async def _probe_more(self, loaded: int) -> bool:
        probe = bridge_member(self._upstream, "load_more_events")
        if probe is None:
            return False
        try:
            page = EventPage.from_result(await maybe_await(probe(1, loaded)), context="load_more_events")
        except Exception as exc:  # leave pagination armed; load_more handles real failures
            _LOGGER.debug("Pagination probe failed: %s", exc)
            return True
        return bool(page.events)

    def _replace_window(self, events: Sequence[KillEvent], *, has_more: bool) -> None:
        self._frames.cancel("evict")
        self._timers.cancel("pagination-cooldown")
        self._generation += 1
        self._events = list(events)
        self._window_offset = 0
        self._has_more = has_more
        self._clear_highlights()
        self._notify(StoreChange(kind="reset", event_ids=tuple(event.id for event in self._events)))
        if len(self._events) > self._max_ui_events:
            self._enforce_window()

    async def reset_to_recent(self, *, threshold: int = RESET_THRESHOLD, limit: int = RESET_LIMIT) -> bool:
        """Hard resync with the newest events once the window has drifted deep."""
        if self._window_offset <= threshold or self._loading_initial:
            return False
        _LOGGER.info("Window offset %d beyond %d; reloading %d recent events", self._window_offset, threshold, limit)
        return await self.load_initial(limit)

    def clear(self) -> None:
        self._frames.cancel("evict")
        self._timers.cancel("pagination-cooldown")
        self._clear_highlights()
        self._generation += 1
        self._events = []
        self._window_offset = 0
        self._has_more = True
        self._notify(StoreChange(kind="clear"))

    # Live ingest ----------------------------------------------------------

    def ingest(self, event: KillEvent, source: EventOrigin) -> Optional[str]:
        """Merge one live event; returns "replace", "prepend" or None when dropped."""
        if not isinstance(event, KillEvent) or not event.id or not event.timestamp:
            _LOGGER.warning("Dropped malformed live event from %s: %r", source, event)
            return None
        if source not in ("local", "server"):
            _LOGGER.warning("Dropped event %s with unknown source %r", event.id, source)
            return None
        stamped = event.with_source(source)
        index = self._index_of(stamped.id)
        if index is not None:
            merged = self._events[index].merged_with(stamped)
            self._events[index] = merged
            if self._debug.traces(merged.id):
                _LOGGER.debug("Reconciled %s at index %d from %s", merged.id, index, source)
            self._notify(StoreChange(kind="replace", event_ids=(merged.id,)))
            self._mark_recently_updated(merged.id)
            return "replace"

        self._events.insert(0, stamped)
        if self._debug.traces(stamped.id):
            _LOGGER.debug("Prepended %s from %s", stamped.id, source)
        self._notify(StoreChange(kind="prepend", event_ids=(stamped.id,), scroll_to_top=True, play_sound=True))
        if len(self._events) > self._max_ui_events:
            self._frames.request("evict", self._enforce_window)
        return "prepend"

    def _clear_highlights(self) -> None:
        for event_id in list(self._recently_updated):
            self._timers.cancel(f"highlight:{event_id}")
        self._recently_updated.clear()

    def _mark_recently_updated(self, event_id: str) -> None:
        self._recently_updated.add(event_id)
        self._notify(StoreChange(kind="highlight", event_ids=(event_id,)))

        def _clear_mark() -> None:
            self._recently_updated.discard(event_id)
            self._notify(StoreChange(kind="highlight", event_ids=(event_id,)))

        self._timers.schedule(f"highlight:{event_id}", self._highlight_ms, _clear_mark)

    # Window bound ---------------------------------------------------------

    def flush_pending_eviction(self) -> int:
        if self._frames.cancel("evict"):
            return self._enforce_window()
        return 0

    def _enforce_window(self) -> int:
        evicted = len(self._events) - self._max_ui_events
        if evicted <= 0:
            return 0
        removed = self._events[self._max_ui_events :]
        self._events = self._events[: self._max_ui_events]
        self._window_offset += evicted
        for event in removed:
            if event.id in self._recently_updated:
                self._recently_updated.discard(event.id)
                self._timers.cancel(f"highlight:{event.id}")
        if self._debug.log_evictions:
            _LOGGER.debug("Evicted %d events; window offset now %d", evicted, self._window_offset)
        self._notify(StoreChange(kind="evict", event_ids=tuple(event.id for event in removed)))
        return evicted

    # Backward pagination --------------------------------------------------

    async def load_more(self, page_size: int) -> int:
        """Append the next older page; returns how many events were added."""
        if self._loading_more or not self._has_more:
            return 0
        try:
            fetch = require_member(self._upstream, "load_more_events")
        except UpstreamUnavailable as exc:
            _LOGGER.debug("Pagination disabled: %s", exc)
            self._has_more = False
            return 0
        self._loading_more = True
        generation = self._generation
        try:
            self.flush_pending_eviction()
            offset = self.true_offset
            try:
                page = EventPage.from_result(await maybe_await(fetch(page_size, offset)), context="load_more_events")
            except Exception as exc:  # pagination failures degrade to "no more data"
                if self._generation != generation:
                    return 0
                _LOGGER.warning("Loading more events at offset %d failed: %s", offset, exc)
                self._has_more = False
                self._arm_pagination_cooldown()
                return 0
            if self._generation != generation:
                _LOGGER.debug("Window replaced while loading offset %d; dropped %d events", offset, len(page.events))
                return 0
            fresh = [event for event in self._dedupe(page.events) if self._index_of(event.id) is None]
            await self._run_prepare(fresh)
            if self._generation != generation:
                _LOGGER.debug("Window replaced while preparing offset %d; dropped %d events", offset, len(fresh))
                return 0
            # live ingest may have raced this page; re-check before appending
            fresh = [event for event in fresh if self._index_of(event.id) is None]
            self._events.extend(fresh)
            self._has_more = page.has_more
            if fresh:
                self._notify(StoreChange(kind="append", event_ids=tuple(event.id for event in fresh)))
            self._frames.cancel("evict")
            self._enforce_window()
            _LOGGER.debug(
                "Loaded %d older events at offset %d (has_more=%s, window_offset=%d)",
                len(fresh),
                offset,
                self._has_more,
                self._window_offset,
            )
            return len(fresh)
        finally:
            self._loading_more = False

    def _arm_pagination_cooldown(self) -> None:
        def _rearm() -> None:
            self._has_more = True
            _LOGGER.debug("Pagination re-armed after cooldown")

        self._timers.schedule("pagination-cooldown", self._cooldown_ms, _rearm)

    # Helpers --------------------------------------------------------------

    def _index_of(self, event_id: str) -> Optional[int]:
        for index, existing in enumerate(self._events):
            if existing.id == event_id:
                return index
        return None

    @staticmethod
    def _dedupe(events: Sequence[KillEvent]) -> List[KillEvent]:
        seen: set[str] = set()
        unique: List[KillEvent] = []
        for event in events:
            if event.id in seen:
                continue
            seen.add(event.id)
            unique.append(event)
        return unique

    async def _run_prepare(self, events: Sequence[KillEvent]) -> None:
        if not events or self._prepare is None:
            return
        try:
            await self._prepare(events)
        except Exception as exc:  # names fall back lazily when eager resolution fails
            _LOGGER.warning("Eager preparation of %d events failed: %s", len(events), exc)

    def teardown(self) -> None:
        self._timers.close()
        self._listeners.clear()
        self._recently_updated.clear()
