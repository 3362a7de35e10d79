import os
from datetime import datetime, timedelta, timezone

import pytest

from killfeed_client.models import KillEvent


def pytest_runtest_setup(item):
    if item.get_closest_marker("pyqt_required"):
        if not os.getenv("PYQT_TESTS"):
            pytest.skip("PYQT_TESTS not set; skipping PyQt-dependent test")


class AfterHarness:
    """Virtual clock for code that schedules through `after`/`after_cancel`."""

    def __init__(self) -> None:
        self.now = 0
        self.scheduled: list[tuple[str, int, object]] = []
        self.cancelled: list[object] = []
        self._active: dict[str, tuple[int, int, object]] = {}
        self._counter = 0

    def after(self, ms: int, cb) -> str:
        self._counter += 1
        handle = f"h{self._counter}"
        self.scheduled.append((handle, ms, cb))
        self._active[handle] = (self.now + ms, self._counter, cb)
        return handle

    def cancel(self, handle: object) -> None:
        self.cancelled.append(handle)
        self._active.pop(handle, None)  # type: ignore[arg-type]

    def pending(self) -> list[str]:
        return sorted(self._active, key=lambda h: self._active[h][:2])

    def pending_delays(self) -> list[int]:
        return [ms for handle, ms, _cb in self.scheduled if handle in self._active]

    def run(self, handle: str) -> None:
        entry = self._active.pop(handle, None)
        if entry is None:
            raise AssertionError(f"Handle {handle} not pending")
        entry[2]()

    def advance(self, ms: int) -> None:
        target = self.now + ms
        while True:
            due = [(when, order, h) for h, (when, order, _cb) in self._active.items() if when <= target]
            if not due:
                break
            when, _order, handle = min(due)
            self.now = when
            _when, _order, cb = self._active.pop(handle)
            cb()
        self.now = target


def make_payload(event_id: str, minute: int = 0, **fields) -> dict:
    stamp = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minute)
    payload = {
        "id": event_id,
        "timestamp": stamp.isoformat().replace("+00:00", "Z"),
        "killers": [f"PU_Pilot_{event_id}"],
        "victims": ["ANVL_Arrow_1234"],
        "deathType": "Combat",
        "location": "Stanton1",
    }
    payload.update(fields)
    return payload


def make_event(event_id: str, minute: int = 0, **fields) -> KillEvent:
    return KillEvent.from_payload(make_payload(event_id, minute, **fields))


class FakeUpstream:
    """In-memory bridge over a newest-first stream of payloads."""

    def __init__(self, stream=None) -> None:
        self.stream: list[dict] = list(stream or [])
        self.calls: list[tuple] = []
        self.fail: set[str] = set()
        self.names: dict[str, dict] = {}
        self.npcs: set[str] = set()
        self.live_callbacks: list = []
        self.status_callbacks: list = []
        self.definition_callbacks: list = []
        self.reconnects = 0

    def _check(self, name: str) -> None:
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    async def get_recent_events(self, limit):
        self.calls.append(("get_recent_events", limit))
        self._check("get_recent_events")
        return self.stream[:limit]

    async def load_more_events(self, page_size, offset):
        self.calls.append(("load_more_events", page_size, offset))
        self._check("load_more_events")
        page = self.stream[offset : offset + page_size]
        return {"events": page, "hasMore": offset + page_size < len(self.stream)}

    async def search_events(self, query, page_size, offset):
        self.calls.append(("search_events", query, page_size, offset))
        self._check("search_events")
        matches = [
            item
            for item in self.stream
            if query.lower() in " ".join([*item.get("killers", []), *item.get("victims", []), item.get("location", "")]).lower()
        ]
        page = matches[offset : offset + page_size]
        return {"events": page, "hasMore": offset + page_size < len(matches)}

    async def resolve_entity(self, entity_id, hint=None):
        self.calls.append(("resolve_entity", entity_id))
        self._check("resolve_entity")
        if entity_id in self.names:
            return self.names[entity_id]
        return {"displayName": entity_id.title(), "category": "unknown", "matchMethod": "pattern"}

    async def is_npc_entity(self, entity_id):
        self.calls.append(("is_npc_entity", entity_id))
        self._check("is_npc_entity")
        return entity_id in self.npcs

    def on_live_event(self, callback):
        self.live_callbacks.append(callback)
        return lambda: self.live_callbacks.remove(callback)

    def on_connection_status(self, callback):
        self.status_callbacks.append(callback)
        return lambda: self.status_callbacks.remove(callback)

    def on_definitions_updated(self, callback):
        self.definition_callbacks.append(callback)
        return lambda: self.definition_callbacks.remove(callback)

    def request_reconnect(self):
        self.reconnects += 1

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def harness() -> AfterHarness:
    return AfterHarness()


@pytest.fixture
def payload_factory():
    return make_payload


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def upstream_factory():
    def _build(count: int = 0, **kwargs) -> FakeUpstream:
        # newest first: ids e{count-1} ... e0
        stream = [make_payload(f"e{index}", minute=index) for index in reversed(range(count))]
        return FakeUpstream(stream, **kwargs)

    return _build
