"""PyQt6 adapters: QTimer-backed scheduling, signal re-emission of bridge callbacks and the Qt feed session."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List, Optional, Set

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from killfeed_client.app_context import AppContext, build_app_context
from killfeed_client.kv_store import KeyValueStore
from killfeed_client.logging_utils import get_logger
from killfeed_client.upstream import bridge_member

_LOGGER = get_logger("QtBridge")


class QtScheduler:
    """`after`/`after_cancel` pair backed by single-shot QTimers."""

    def __init__(self, parent: Optional[QObject] = None) -> None:
        self._parent = parent
        self._timers: Set[QTimer] = set()

    def after(self, delay_ms: int, callback: Callable[[], None]) -> QTimer:
        timer = QTimer(self._parent)
        timer.setSingleShot(True)
        timer.setInterval(max(0, int(delay_ms)))

        def _fire() -> None:
            self._timers.discard(timer)
            timer.deleteLater()
            callback()

        timer.timeout.connect(_fire)
        self._timers.add(timer)
        timer.start()
        return timer

    def after_cancel(self, handle: object) -> None:
        if not isinstance(handle, QTimer):
            return
        handle.stop()
        if handle in self._timers:
            self._timers.discard(handle)
            handle.deleteLater()

    def pending(self) -> int:
        return len(self._timers)

    def cancel_all(self) -> None:
        for timer in list(self._timers):
            self.after_cancel(timer)


class LiveFeedBridge(QObject):
    """Re-emits upstream callbacks as Qt signals so handlers run on the Qt thread."""

    live_event = pyqtSignal(object, str)
    connection_status = pyqtSignal(str, object, object)
    definitions_updated = pyqtSignal()

    def __init__(self, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self._detach: List[Callable[[], Any]] = []

    def attach(self, upstream: Any) -> List[str]:
        """Subscribe to every callback the upstream exposes; returns the hooked names."""
        hooked: List[str] = []
        registrations = (
            ("on_live_event", self._emit_live_event),
            ("on_connection_status", self._emit_connection_status),
            ("on_definitions_updated", self._emit_definitions_updated),
        )
        for name, handler in registrations:
            register = bridge_member(upstream, name)
            if register is None:
                _LOGGER.debug("Bridge has no %s; signal stays idle", name)
                continue
            unsubscribe = register(handler)
            if callable(unsubscribe):
                self._detach.append(unsubscribe)
            hooked.append(name)
        return hooked

    def detach(self) -> None:
        while self._detach:
            unsubscribe = self._detach.pop()
            try:
                unsubscribe()
            except Exception as exc:
                _LOGGER.debug("Bridge unsubscribe failed: %s", exc)

    def _emit_live_event(self, payload: Any, source: str = "local") -> None:
        self.live_event.emit(payload, str(source))

    def _emit_connection_status(self, status: str, attempts: Any = None, delay_ms: Any = None) -> None:
        self.connection_status.emit(str(status), attempts, delay_ms)

    def _emit_definitions_updated(self, *_args: Any) -> None:
        self.definitions_updated.emit()


class FeedSession(QObject):
    """Qt owner of one client context: bridge signals in, feed and status signals out.

    Live deliveries drain on the asyncio loop running on the Qt thread; without
    one they queue until `controller.drain()` is awaited.
    """

    feed_changed = pyqtSignal(object)
    status_changed = pyqtSignal(str, bool)

    def __init__(
        self,
        context: AppContext,
        *,
        scheduler: Optional[QtScheduler] = None,
        bridge: Optional[LiveFeedBridge] = None,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.context = context
        self.scheduler = scheduler
        self.bridge = bridge or LiveFeedBridge(self)
        self._unsubscribe: List[Callable[[], None]] = []
        self._closed = False

        controller = context.controller
        self.bridge.live_event.connect(controller.on_live_event)
        self.bridge.connection_status.connect(context.reconnection.handle_status)
        self.bridge.definitions_updated.connect(controller.on_definitions_updated)
        self._unsubscribe.append(controller.subscribe(self.feed_changed.emit))
        self._unsubscribe.append(context.reconnection.subscribe(lambda _state: self._publish_status()))

    @property
    def status_text(self) -> str:
        return self.context.controller.status_text()

    @property
    def show_status(self) -> bool:
        return self.context.controller.show_status_banner()

    def attach(self, upstream: Any) -> List[str]:
        return self.bridge.attach(upstream)

    async def start(self) -> bool:
        return await self.context.controller.start()

    def _publish_status(self) -> None:
        self.status_changed.emit(self.status_text, self.show_status)

    def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.bridge.detach()
        for signal in (self.bridge.live_event, self.bridge.connection_status, self.bridge.definitions_updated):
            try:
                signal.disconnect()
            except TypeError as exc:  # raised when nothing is connected
                _LOGGER.debug("Signal already disconnected: %s", exc)
        while self._unsubscribe:
            self._unsubscribe.pop()()
        self.context.teardown()
        if self.scheduler is not None:
            self.scheduler.cancel_all()


def build_feed_session(
    *,
    root: Path,
    upstream: Any,
    parent: Optional[QObject] = None,
    kv_store: Optional[KeyValueStore] = None,
    random_source: Optional[Callable[[], float]] = None,
) -> FeedSession:
    """Build a client context on QTimer scheduling and hook the upstream through Qt signals."""
    scheduler = QtScheduler(parent)
    context = build_app_context(
        root=root,
        upstream=upstream,
        scheduler=scheduler,
        kv_store=kv_store,
        random_source=random_source,
    )
    session = FeedSession(context, scheduler=scheduler, parent=parent)
    hooked = session.attach(upstream)
    _LOGGER.debug("Feed session hooked %s", ", ".join(hooked) or "nothing")
    return session
