"""Cancellable timer handles for the event loop the client runs on."""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional

AfterFn = Callable[[int, Callable[[], None]], object]
AfterCancelFn = Callable[[object], None]

FRAME_INTERVAL_MS = 16


class AsyncioScheduler:
    """`after`/`after_cancel` pair backed by `loop.call_later`."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def after(self, delay_ms: int, callback: Callable[[], None]) -> object:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0, delay_ms) / 1000.0, callback)

    def after_cancel(self, handle: object) -> None:
        cancel = getattr(handle, "cancel", None)
        if callable(cancel):
            cancel()


class TimerGroup:
    """Named timer handles owned by one component and cancelled together."""

    def __init__(self, *, after: AfterFn, after_cancel: AfterCancelFn) -> None:
        self._after = after
        self._after_cancel = after_cancel
        self._handles: Dict[str, object] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, key: str, delay_ms: int, callback: Callable[[], None]) -> Optional[object]:
        """Arm `key`, replacing any pending handle under the same key."""
        if self._closed:
            return None
        self.cancel(key)
        handle: Optional[object] = None

        def _fire() -> None:
            if self._handles.get(key) is handle:
                self._handles.pop(key, None)
            if self._closed:
                return
            callback()

        handle = self._after(max(0, int(delay_ms)), _fire)
        self._handles[key] = handle
        return handle

    def schedule_once(self, key: str, delay_ms: int, callback: Callable[[], None]) -> bool:
        """Arm `key` unless it is already pending. Returns True when newly armed."""
        if key in self._handles:
            return False
        return self.schedule(key, delay_ms, callback) is not None

    def pending(self, key: str) -> bool:
        return key in self._handles

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        self._after_cancel(handle)
        return True

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def close(self) -> None:
        self.cancel_all()
        self._closed = True


class FrameScheduler:
    """Coalesces structural updates so each key runs at most once per frame."""

    def __init__(self, timers: TimerGroup, *, frame_ms: int = FRAME_INTERVAL_MS) -> None:
        self._timers = timers
        self._frame_ms = frame_ms

    def request(self, key: str, callback: Callable[[], None]) -> bool:
        return self._timers.schedule_once(f"frame:{key}", self._frame_ms, callback)

    def pending(self, key: str) -> bool:
        return self._timers.pending(f"frame:{key}")

    def cancel(self, key: str) -> bool:
        return self._timers.cancel(f"frame:{key}")
