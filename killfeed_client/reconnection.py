"""Connection-liveness state machine with progressive reconnect backoff."""
from __future__ import annotations

import dataclasses
import random
from typing import Any, Callable, List, Optional

from killfeed_client.logging_utils import get_logger
from killfeed_client.models import ConnectionState
from killfeed_client.timers import AfterCancelFn, AfterFn, TimerGroup
from killfeed_client.upstream import dispatch

_LOGGER = get_logger("Reconnection")

RETRY_LADDER_MS = (3000, 5000, 10000, 15000)
RANDOM_RETRY_MIN_MS = 15000
RANDOM_RETRY_MAX_MS = 30000
CONNECT_WATCHDOG_MS = 10000
CONNECTED_BANNER_MS = 3000
COUNTDOWN_TICK_MS = 1000

STATUSES = ("disconnected", "connecting", "connected", "error")

ConnectionListener = Callable[[ConnectionState], None]


def compute_retry_delay(attempt: int, random_source: Callable[[], float] = random.random) -> int:
    """Delay before retry number `attempt` (0-based)."""
    index = max(0, int(attempt))
    if index < len(RETRY_LADDER_MS):
        return RETRY_LADDER_MS[index]
    span = RANDOM_RETRY_MAX_MS - RANDOM_RETRY_MIN_MS
    delay = RANDOM_RETRY_MIN_MS + int(random_source() * span)
    return min(delay, RANDOM_RETRY_MAX_MS - 1)


class ReconnectionController:
    """Tracks transport status and drives the visible reconnect countdown."""

    def __init__(
        self,
        *,
        after: AfterFn,
        after_cancel: AfterCancelFn,
        request_reconnect: Optional[Callable[[], Any]] = None,
        random_source: Callable[[], float] = random.random,
        watchdog_ms: int = CONNECT_WATCHDOG_MS,
        connected_banner_ms: int = CONNECTED_BANNER_MS,
        tick_ms: int = COUNTDOWN_TICK_MS,
    ) -> None:
        self._timers = TimerGroup(after=after, after_cancel=after_cancel)
        self._request_reconnect = request_reconnect
        self._random = random_source
        self._watchdog_ms = int(watchdog_ms)
        self._banner_ms = int(connected_banner_ms)
        self._tick_ms = max(1, int(tick_ms))
        self._state = ConnectionState(status="connecting")
        self._listeners: List[ConnectionListener] = []
        self._disposed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def can_reconnect(self) -> bool:
        return self._request_reconnect is not None

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_state(self, **changes: Any) -> None:
        self._state = dataclasses.replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                _LOGGER.exception("Connection listener failed")

    # Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._disposed:
            return
        self._set_state(status="connecting", show_connected=False)
        self._timers.schedule("watchdog", self._watchdog_ms, self._on_watchdog)

    def teardown(self) -> None:
        self._disposed = True
        self._timers.close()
        self._listeners.clear()

    # Transport callbacks --------------------------------------------------

    def handle_status(self, status: str, attempts: Optional[int] = None, delay_ms: Optional[int] = None) -> None:
        if self._disposed:
            return
        if status not in STATUSES:
            _LOGGER.warning("Ignoring unknown connection status %r", status)
            return
        previous = self._state.status
        if status == "connected":
            self._enter_connected()
        elif status == "connecting":
            self._timers.cancel("countdown")
            self._set_state(status="connecting", countdown_ms=0, show_connected=False)
        elif status == "disconnected":
            self._enter_disconnected(attempts=attempts, delay_ms=delay_ms)
        else:
            self._timers.cancel("watchdog")
            self._timers.cancel("countdown")
            self._set_state(status="error", countdown_ms=0, show_connected=False)
        if previous != status:
            _LOGGER.info("Connection status changed: %s -> %s", previous, status)

    def _enter_connected(self) -> None:
        self._timers.cancel("watchdog")
        self._timers.cancel("countdown")
        self._set_state(status="connected", attempts=0, next_delay_ms=0, countdown_ms=0, show_connected=True)
        self._timers.schedule("banner", self._banner_ms, self._hide_connected_banner)

    def _hide_connected_banner(self) -> None:
        if self._state.show_connected:
            self._set_state(show_connected=False)

    def _enter_disconnected(self, *, attempts: Optional[int] = None, delay_ms: Optional[int] = None) -> None:
        self._timers.cancel("watchdog")
        self._timers.cancel("banner")
        index = self._state.attempts if attempts is None else max(0, int(attempts))
        delay = compute_retry_delay(index, self._random) if delay_ms is None else max(0, int(delay_ms))
        self._set_state(
            status="disconnected",
            attempts=index + 1,
            next_delay_ms=delay,
            countdown_ms=delay,
            show_connected=False,
        )
        _LOGGER.debug("Reconnect attempt %d scheduled in %dms", index + 1, delay)
        self._timers.schedule("countdown", min(self._tick_ms, delay), self._on_countdown_tick)

    def _on_countdown_tick(self) -> None:
        remaining = max(0, self._state.countdown_ms - self._tick_ms)
        self._set_state(countdown_ms=remaining)
        if remaining > 0:
            self._timers.schedule("countdown", min(self._tick_ms, remaining), self._on_countdown_tick)
            return
        if self._state.status == "disconnected" and self._request_reconnect is not None:
            self._attempt_reconnect("countdown elapsed")

    def _on_watchdog(self) -> None:
        if self._state.status != "connecting":
            return
        _LOGGER.warning("Still connecting after %dms", self._watchdog_ms)
        if self._request_reconnect is not None:
            self._enter_disconnected()
        else:
            self._set_state(status="error", attempts=self._state.attempts + 1, countdown_ms=0)

    # User actions ---------------------------------------------------------

    def reconnect_now(self) -> None:
        if self._disposed:
            return
        self._attempt_reconnect("manual")

    def _attempt_reconnect(self, reason: str) -> None:
        self._timers.cancel("watchdog")
        self._timers.cancel("countdown")
        self._set_state(status="connecting", countdown_ms=0, show_connected=False)
        if self._request_reconnect is None:
            _LOGGER.debug("Reconnect requested (%s) but the bridge cannot reconnect", reason)
            return
        _LOGGER.info("Requesting reconnect (%s, attempt %d)", reason, self._state.attempts)
        try:
            dispatch(self._request_reconnect())
        except Exception as exc:  # a failed request leaves the state machine in "connecting"
            _LOGGER.warning("Reconnect request failed: %s", exc)
