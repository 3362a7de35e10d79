from __future__ import annotations

import asyncio
import json

import pytest

from killfeed_client import entity_cache as module
from killfeed_client.entity_cache import EntityResolutionCache, clean_entity_name, map_server_category
from killfeed_client.kv_store import MemoryKeyValueStore
from killfeed_client.models import ResolvedEntity


class Clock:
    def __init__(self, value: float = 1000.0) -> None:
        self.value = value

    def now(self) -> float:
        return self.value


class RecordingResolver:
    def __init__(self, names=None, fail=False) -> None:
        self.names = dict(names or {})
        self.fail = fail
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, entity_id, hint=None):
        self.calls.append(entity_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("definitions offline")
        return self.names.get(entity_id, {"displayName": f"Resolved {entity_id}", "category": "ship", "matchMethod": "exact"})


def build_cache(store=None, **kwargs) -> EntityResolutionCache:
    kwargs.setdefault("random_source", lambda: 0.99)
    return EntityResolutionCache(store if store is not None else MemoryKeyValueStore(), **kwargs)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("ANVL_Arrow_1234", "Arrow"),
        ("AEGS_Gladius_Pirate_5521", "Gladius Pirate"),
        ("PU_Pilot_e1", "PU Pilot e1"),
        ("Hangar", "Hangar"),
        ("", "Unknown"),
    ],
)
def test_clean_entity_name_heuristic(raw, expected) -> None:
    assert clean_entity_name(raw) == expected


def test_map_server_category() -> None:
    assert map_server_category("Ship") == "ship"
    assert map_server_category("ground_vehicle") == "ship"
    assert map_server_category("WeaponPersonal") == "weapon"
    assert map_server_category("npc_pilot") == "npc"
    assert map_server_category("landing_zone") == "location"
    assert map_server_category(None) == "unknown"


def test_resolve_is_idempotent_with_one_resolver_call() -> None:
    resolver = RecordingResolver()
    cache = build_cache(resolver=resolver)

    async def scenario():
        first = await cache.resolve("AEGS_Gladius_1")
        second = await cache.resolve("AEGS_Gladius_1")
        return first, second

    first, second = asyncio.run(scenario())

    assert first == second
    assert first.display_name == "Resolved AEGS_Gladius_1"
    assert first.original_id == "AEGS_Gladius_1"
    assert resolver.calls == ["AEGS_Gladius_1"]
    assert cache.resolver_calls == 1


def test_concurrent_resolves_share_one_request() -> None:
    resolver = RecordingResolver()
    cache = build_cache(resolver=resolver)

    async def scenario():
        resolver.gate = asyncio.Event()
        pending = asyncio.gather(*(cache.resolve("ORIG_600i") for _ in range(3)))
        await asyncio.sleep(0)
        resolver.gate.set()
        return await pending

    results = asyncio.run(scenario())

    assert len({entity.display_name for entity in results}) == 1
    assert resolver.calls == ["ORIG_600i"]


def test_server_hint_resolves_without_resolver() -> None:
    resolver = RecordingResolver()
    cache = build_cache(resolver=resolver)

    entity = asyncio.run(
        cache.resolve("AEGS_Gladius_1", {"friendlyName": "Gladius", "category": "Ship", "isNpc": True})
    )

    assert entity == ResolvedEntity(
        display_name="Gladius", is_npc=True, category="ship", match_method="server", original_id="AEGS_Gladius_1"
    )
    assert resolver.calls == []
    assert cache.cached("AEGS_Gladius_1") == entity


def test_resolver_failure_falls_back_without_caching() -> None:
    resolver = RecordingResolver(fail=True)
    cache = build_cache(resolver=resolver)

    entity = asyncio.run(cache.resolve("DRAK_Cutlass_Black_77"))

    assert entity.display_name == "Cutlass Black"
    assert entity.match_method == "fallback"
    assert cache.cached("DRAK_Cutlass_Black_77") is None


def test_get_display_name_falls_back_then_resolves_in_background() -> None:
    resolver = RecordingResolver(names={"MISC_Prospector_9": {"displayName": "Prospector (Mining)", "category": "ship", "matchMethod": "exact"}})
    cache = build_cache(resolver=resolver)

    async def scenario():
        before = cache.get_display_name("MISC_Prospector_9")
        await cache.drain_background()
        return before, cache.get_display_name("MISC_Prospector_9")

    before, after = asyncio.run(scenario())

    assert before == "Prospector"  # heuristic strips the manufacturer and numeric suffix
    assert after == "Prospector (Mining)"
    assert cache.cached("MISC_Prospector_9").match_method == "exact"
    assert resolver.calls == ["MISC_Prospector_9"]


def test_failed_lookups_are_not_retried_for_thirty_seconds() -> None:
    clock = Clock()
    resolver = RecordingResolver(fail=True)
    cache = build_cache(resolver=resolver, time_source=clock.now)

    async def scenario() -> None:
        cache.get_display_name("KRIG_Merlin_2")
        await cache.drain_background()
        clock.value += 10
        cache.get_display_name("KRIG_Merlin_2")
        await cache.drain_background()
        assert len(resolver.calls) == 1
        clock.value += 21
        cache.get_display_name("KRIG_Merlin_2")
        await cache.drain_background()

    asyncio.run(scenario())

    assert len(resolver.calls) == 2


def test_synchronous_accessors_without_loop_use_heuristics() -> None:
    cache = build_cache(resolver=RecordingResolver())

    assert cache.get_display_name("CRUS_Starlifter_C2_7") == "Starlifter C2"
    assert cache.is_npc("PU_Human_Enemy_1") is False


def test_save_and_load_round_trip_through_kv_store() -> None:
    store = MemoryKeyValueStore()
    cache = build_cache(store, resolver=RecordingResolver())
    asyncio.run(cache.resolve("RSI_Aurora_1"))
    cache.flush()

    payload = json.loads(store.get(module.RESOLVED_KEY))
    assert payload["version"] == module.CACHE_VERSION
    assert isinstance(payload["timestamp"], int)
    assert payload[module.RESOLVED_KEY]["RSI_Aurora_1"]["displayName"] == "Resolved RSI_Aurora_1"

    reloaded = build_cache(store, resolver=RecordingResolver())
    reloaded.load()
    assert reloaded.cached("RSI_Aurora_1").display_name == "Resolved RSI_Aurora_1"
    assert reloaded.get_display_name("RSI_Aurora_1") == "Resolved RSI_Aurora_1"


def test_version_mismatch_discards_entry() -> None:
    stale = {"version": "1", "timestamp": 0, module.RESOLVED_KEY: {"x": {"displayName": "Old"}}}
    store = MemoryKeyValueStore({module.RESOLVED_KEY: json.dumps(stale)})
    cache = build_cache(store)

    cache.load()

    assert cache.cached("x") is None
    assert store.get(module.RESOLVED_KEY) is None


def test_corrupt_entry_is_discarded() -> None:
    store = MemoryKeyValueStore({module.RESOLVED_KEY: "{not json", module.NPC_KEY: json.dumps([1, 2])})
    cache = build_cache(store)

    cache.load()

    assert cache.stats()["total"] == 0
    assert store.get(module.RESOLVED_KEY) is None
    assert store.get(module.NPC_KEY) is None


def test_legacy_npc_statuses_answer_is_npc() -> None:
    entry = {"version": module.CACHE_VERSION, "timestamp": 0, module.NPC_KEY: {"PU_Pirate_1": True}}
    cache = build_cache(MemoryKeyValueStore({module.NPC_KEY: json.dumps(entry)}))
    cache.load()

    assert cache.is_npc("PU_Pirate_1") is True
    assert cache.filter_npcs(["PU_Pirate_1", "Player_One"]) == ["Player_One"]


def test_check_npc_uses_checker_once() -> None:
    calls: list[str] = []

    async def checker(entity_id):
        calls.append(entity_id)
        return entity_id.startswith("PU_")

    cache = build_cache(npc_checker=checker)

    async def scenario():
        return await cache.check_npc("PU_Guard_4"), await cache.check_npc("PU_Guard_4")

    assert asyncio.run(scenario()) == (True, True)
    assert calls == ["PU_Guard_4"]


def test_saves_are_probabilistic_until_flush() -> None:
    store = MemoryKeyValueStore()
    lazy = build_cache(store, resolver=RecordingResolver(), random_source=lambda: 0.99)
    asyncio.run(lazy.resolve("GAMA_Syulen_1"))
    assert store.writes == 0
    lazy.flush()
    assert store.writes == 2

    eager_store = MemoryKeyValueStore()
    eager = build_cache(eager_store, resolver=RecordingResolver(), random_source=lambda: 0.0)
    asyncio.run(eager.resolve("GAMA_Syulen_1"))
    assert eager_store.writes == 2


def test_invalidate_drops_answers_and_ignores_inflight_results() -> None:
    resolver = RecordingResolver()
    store = MemoryKeyValueStore()
    cache = build_cache(store, resolver=resolver)

    async def scenario() -> ResolvedEntity:
        await cache.resolve("ESPR_Talon_1")
        resolver.gate = asyncio.Event()
        task = asyncio.ensure_future(cache.resolve("ESPR_Prowler_1"))
        await asyncio.sleep(0)
        cache.invalidate()
        resolver.gate.set()
        return await task

    late = asyncio.run(scenario())

    assert late.display_name == "Resolved ESPR_Prowler_1"
    assert cache.cached("ESPR_Talon_1") is None
    assert cache.cached("ESPR_Prowler_1") is None
    assert json.loads(store.get(module.RESOLVED_KEY))[module.RESOLVED_KEY] == {}


def test_check_definitions_version_invalidates_on_change() -> None:
    cache = build_cache(resolver=RecordingResolver())
    versions = iter(["v1", "v1", "v2"])
    asyncio.run(cache.resolve("XIAN_Nox_1"))

    assert asyncio.run(cache.check_definitions_version(lambda: next(versions))) is False
    assert asyncio.run(cache.check_definitions_version(lambda: next(versions))) is False
    assert cache.cached("XIAN_Nox_1") is not None
    assert asyncio.run(cache.check_definitions_version(lambda: next(versions))) is True
    assert cache.cached("XIAN_Nox_1") is None


def test_numeric_definitions_version_is_stable(caplog) -> None:
    cache = build_cache(resolver=RecordingResolver())
    asyncio.run(cache.resolve("XIAN_Nox_1"))

    first = asyncio.run(cache.check_definitions_version(lambda: 3))
    second = asyncio.run(cache.check_definitions_version(lambda: 3))

    assert (first, second) == (False, False)
    assert cache.cached("XIAN_Nox_1") is not None
    assert "Entity caches invalidated" not in caplog.text
    assert asyncio.run(cache.check_definitions_version(lambda: "3")) is False
    assert asyncio.run(cache.check_definitions_version(lambda: 4)) is True


def test_resolve_events_collects_distinct_ids(event_factory) -> None:
    resolver = RecordingResolver()
    cache = build_cache(resolver=resolver)
    events = [event_factory("a", 0, weapon="KLWE_Rifle"), event_factory("b", 1, weapon="KLWE_Rifle")]

    count = asyncio.run(cache.resolve_events(events))

    # two pilots, one shared victim, one shared location, one shared weapon
    assert count == 5
    assert sorted(resolver.calls) == sorted(set(resolver.calls))
    assert len(resolver.calls) == 5


def test_stats_breakdown() -> None:
    cache = build_cache(resolver=RecordingResolver())

    async def scenario() -> None:
        await cache.resolve("a")
        await cache.resolve("b", {"friendlyName": "Bee", "category": "npc", "isNpc": True})

    asyncio.run(scenario())
    stats = cache.stats()

    assert stats["total"] == 2
    assert stats["by_method"] == {"exact": 1, "server": 1}
    assert stats["by_category"] == {"ship": 1, "npc": 1}
    assert stats["npc_count"] == 1
    assert stats["resolver_calls"] == 1
