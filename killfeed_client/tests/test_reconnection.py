from __future__ import annotations

import asyncio

import pytest

from killfeed_client.reconnection import ReconnectionController, compute_retry_delay


class ReconnectRecorder:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1


def build_controller(harness, request_reconnect=None, random_value: float = 0.5) -> ReconnectionController:
    return ReconnectionController(
        after=harness.after,
        after_cancel=harness.cancel,
        request_reconnect=request_reconnect,
        random_source=lambda: random_value,
    )


def test_backoff_sequence_for_consecutive_disconnects(harness) -> None:
    controller = build_controller(harness, ReconnectRecorder(), random_value=0.37)

    delays = []
    for _ in range(5):
        controller.handle_status("disconnected")
        delays.append(controller.state.next_delay_ms)

    assert delays[:4] == [3000, 5000, 10000, 15000]
    assert 15000 <= delays[4] < 30000
    assert controller.state.attempts == 5


@pytest.mark.parametrize("value", [0.0, 0.5, 0.999999])
def test_random_tier_stays_within_bounds(value) -> None:
    delay = compute_retry_delay(7, lambda: value)
    assert 15000 <= delay < 30000


def test_transport_supplied_attempts_and_delay_win(harness) -> None:
    controller = build_controller(harness, ReconnectRecorder())

    controller.handle_status("disconnected", attempts=2)
    assert controller.state.next_delay_ms == 10000
    assert controller.state.attempts == 3

    controller.handle_status("disconnected", attempts=0, delay_ms=1234)
    assert controller.state.next_delay_ms == 1234
    assert controller.state.countdown_ms == 1234


def test_countdown_ticks_then_requests_reconnect(harness) -> None:
    recorder = ReconnectRecorder()
    controller = build_controller(harness, recorder)
    controller.handle_status("disconnected")

    harness.advance(1000)
    assert controller.state.countdown_ms == 2000
    harness.advance(1000)
    assert controller.state.countdown_ms == 1000
    assert recorder.calls == 0

    harness.advance(1000)
    assert recorder.calls == 1
    assert controller.state.status == "connecting"
    assert controller.state.attempts == 1


def test_countdown_without_reconnect_api_waits_for_transport(harness) -> None:
    controller = build_controller(harness)
    controller.handle_status("disconnected")

    harness.advance(3000)

    assert controller.state.status == "disconnected"
    assert controller.state.countdown_ms == 0


def test_connected_resets_attempts_and_shows_banner(harness) -> None:
    controller = build_controller(harness, ReconnectRecorder())
    controller.start()
    controller.handle_status("disconnected")
    controller.handle_status("disconnected")

    controller.handle_status("connected")

    state = controller.state
    assert state.status == "connected"
    assert state.attempts == 0
    assert state.next_delay_ms == 0
    assert state.show_connected is True
    harness.advance(2999)
    assert controller.state.show_connected is True
    harness.advance(1)
    assert controller.state.show_connected is False
    assert harness.pending() == []


def test_startup_watchdog_moves_to_disconnected(harness) -> None:
    recorder = ReconnectRecorder()
    controller = build_controller(harness, recorder)
    controller.start()

    harness.advance(9999)
    assert controller.state.status == "connecting"
    harness.advance(1)

    assert controller.state.status == "disconnected"
    assert controller.state.attempts == 1
    assert controller.state.next_delay_ms == 3000


def test_startup_watchdog_without_reconnect_api_reports_error(harness) -> None:
    controller = build_controller(harness)
    controller.start()

    harness.advance(10000)

    assert controller.state.status == "error"
    assert controller.state.attempts == 1


def test_watchdog_is_cancelled_by_connection(harness) -> None:
    controller = build_controller(harness, ReconnectRecorder())
    controller.start()
    controller.handle_status("connected")

    harness.advance(20000)

    assert controller.state.status == "connected"


def test_error_keeps_attempts_and_stops_countdown(harness) -> None:
    recorder = ReconnectRecorder()
    controller = build_controller(harness, recorder)
    controller.handle_status("disconnected")
    controller.handle_status("disconnected")

    controller.handle_status("error")
    harness.advance(60000)

    assert controller.state.status == "error"
    assert controller.state.attempts == 2
    assert recorder.calls == 0


def test_connecting_cancels_countdown(harness) -> None:
    recorder = ReconnectRecorder()
    controller = build_controller(harness, recorder)
    controller.handle_status("disconnected")

    controller.handle_status("connecting")
    harness.advance(10000)

    assert recorder.calls == 0
    assert controller.state.countdown_ms == 0


def test_reconnect_now_keeps_attempts(harness) -> None:
    recorder = ReconnectRecorder()
    controller = build_controller(harness, recorder)
    controller.handle_status("disconnected")
    controller.handle_status("disconnected")

    controller.reconnect_now()

    assert recorder.calls == 1
    assert controller.state.status == "connecting"
    assert controller.state.attempts == 2
    assert harness.pending() == []


def test_reconnect_now_schedules_async_request() -> None:
    calls: list[str] = []

    async def request() -> None:
        calls.append("reconnect")

    async def scenario() -> None:
        loop = asyncio.get_running_loop()
        controller = ReconnectionController(
            after=lambda ms, cb: loop.call_later(ms / 1000.0, cb),
            after_cancel=lambda handle: handle.cancel(),
            request_reconnect=request,
        )
        controller.reconnect_now()
        await asyncio.sleep(0)
        controller.teardown()

    asyncio.run(scenario())

    assert calls == ["reconnect"]


def test_listeners_observe_transitions(harness) -> None:
    controller = build_controller(harness, ReconnectRecorder())
    statuses: list[str] = []
    unsubscribe = controller.subscribe(lambda state: statuses.append(state.status))

    controller.start()
    controller.handle_status("connected")
    unsubscribe()
    controller.handle_status("disconnected")

    assert statuses == ["connecting", "connected"]


def test_teardown_cancels_timers_and_ignores_updates(harness) -> None:
    recorder = ReconnectRecorder()
    controller = build_controller(harness, recorder)
    controller.start()
    controller.handle_status("disconnected")

    controller.teardown()
    controller.handle_status("connected")
    harness.advance(60000)

    assert harness.pending() == []
    assert controller.state.status == "disconnected"
    assert recorder.calls == 0


def test_unknown_status_is_ignored(harness) -> None:
    controller = build_controller(harness)
    controller.handle_status("sleeping")
    assert controller.state.status == "connecting"
