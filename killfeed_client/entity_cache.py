"""Two-tier cache resolving raw entity ids to display names and NPC classification.

Lookups happen in three places:

- eager batch resolution (`resolve_events`) runs before a batch of events is
  published so the first render already shows resolved names;
- synchronous accessors (`get_display_name`, `is_npc`) always answer at once,
  falling back to a local heuristic and kicking off a background resolution;
- the persisted snapshot (`load`/`save`) seeds the cache at startup.

Writes are first-wins per key, so interleaved background resolutions never
overwrite each other.
"""
from __future__ import annotations

import asyncio
import json
import random
import re
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Mapping, Optional, Set

from killfeed_client.kv_store import KeyValueStore
from killfeed_client.logging_utils import get_logger
from killfeed_client.models import KillEvent, ResolvedEntity
from killfeed_client.upstream import dispatch, maybe_await

_LOGGER = get_logger("EntityCache")

CACHE_VERSION = "2"
RESOLVED_KEY = "resolvedEntities"
NPC_KEY = "npcStatuses"
FAILED_RETRY_SECONDS = 30.0

MANUFACTURER_PREFIXES = frozenset(
    {
        "ORIG", "CRUS", "RSI", "AEGS", "VNCL", "DRAK", "ANVL", "BANU", "MISC",
        "CNOU", "XIAN", "GAMA", "TMBL", "ESPR", "KRIG", "GRIN", "XNAA", "MRAI",
    }
)
_NUMERIC_SUFFIX = re.compile(r"^(.+?)_\d+$")

ResolverFn = Callable[[str, Optional[Mapping[str, Any]]], Any]
NpcCheckFn = Callable[[str], Any]
SpawnFn = Callable[[Coroutine[Any, Any, Any]], Optional[Awaitable[Any]]]


def clean_entity_name(entity_id: str) -> str:
    """Local display-name heuristic used until a real resolution arrives."""
    if not entity_id:
        return "Unknown"
    cleaned = _NUMERIC_SUFFIX.sub(r"\1", entity_id)
    parts = cleaned.split("_")
    if len(parts) > 1 and parts[0] in MANUFACTURER_PREFIXES:
        cleaned = " ".join(parts[1:])
    return cleaned.replace("_", " ")


def map_server_category(raw: Optional[str]) -> str:
    if not raw:
        return "unknown"
    normalized = str(raw).lower()
    if "ship" in normalized or "vehicle" in normalized:
        return "ship"
    if "weapon" in normalized or "gun" in normalized:
        return "weapon"
    if "object" in normalized or "debris" in normalized:
        return "object"
    if "npc" in normalized or "ai" in normalized:
        return "npc"
    if "location" in normalized or "zone" in normalized:
        return "location"
    return "unknown"


def fallback_entity(entity_id: str) -> ResolvedEntity:
    return ResolvedEntity(
        display_name=clean_entity_name(entity_id),
        is_npc=False,
        category="unknown",
        match_method="fallback",
        original_id=entity_id or "",
    )


def collect_entity_ids(events: Iterable[KillEvent]) -> List[str]:
    """Distinct ids referenced by the events, in first-seen order."""
    seen: Dict[str, None] = {}
    for event in events:
        for entity_id in event.entity_ids():
            seen.setdefault(entity_id, None)
    return list(seen)


class EntityResolutionCache:
    """Resolved-entity, display-name and legacy NPC caches with persistence."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        resolver: Optional[ResolverFn] = None,
        npc_checker: Optional[NpcCheckFn] = None,
        save_probability: float = 0.15,
        random_source: Callable[[], float] = random.random,
        time_source: Callable[[], float] = time.time,
        spawn: Optional[SpawnFn] = None,
        version: str = CACHE_VERSION,
        log_resolution: bool = False,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._npc_checker = npc_checker
        self._save_probability = min(1.0, max(0.0, float(save_probability)))
        self._random = random_source
        self._time = time_source
        self._spawn = spawn or dispatch
        self._version = version
        self._log_resolution = log_resolution

        self._resolved: Dict[str, ResolvedEntity] = {}
        self._display_names: Dict[str, str] = {}
        self._npc_statuses: Dict[str, bool] = {}
        self._inflight: Dict[str, "asyncio.Future[ResolvedEntity]"] = {}
        self._failed_at: Dict[str, float] = {}
        self._background: Set[Awaitable[Any]] = set()
        self._generation = 0
        self._dirty = False
        self._resolver_calls = 0
        self._definitions_version: Optional[str] = None

    # Persistence ----------------------------------------------------------

    def load(self) -> None:
        self._resolved = self._load_entry(RESOLVED_KEY, self._parse_resolved)
        self._npc_statuses = self._load_entry(NPC_KEY, self._parse_npc_statuses)
        self._display_names = {key: entity.display_name for key, entity in self._resolved.items()}
        self._dirty = False
        _LOGGER.debug(
            "Entity cache loaded: %d resolved, %d NPC statuses", len(self._resolved), len(self._npc_statuses)
        )

    def _load_entry(self, key: str, parse: Callable[[Any], Dict[str, Any]]) -> Dict[str, Any]:
        raw = self._store.get(key)
        if raw is None:
            return {}
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("entry is not an object")
            version = data.get("version")
            if version != self._version:
                _LOGGER.info("Discarding %s cache: version %r != %r", key, version, self._version)
                self._store.remove(key)
                return {}
            return parse(data.get(key))
        except (TypeError, ValueError) as exc:
            _LOGGER.warning("Discarding unreadable %s cache: %s", key, exc)
            self._store.remove(key)
            return {}

    @staticmethod
    def _parse_resolved(payload: Any) -> Dict[str, ResolvedEntity]:
        if not isinstance(payload, dict):
            raise ValueError("resolved entity payload is not an object")
        result: Dict[str, ResolvedEntity] = {}
        for entity_id, entry in payload.items():
            if not isinstance(entry, dict):
                raise ValueError(f"entry for {entity_id!r} is not an object")
            result[str(entity_id)] = ResolvedEntity.from_dict(entry, original_id=str(entity_id))
        return result

    @staticmethod
    def _parse_npc_statuses(payload: Any) -> Dict[str, bool]:
        if not isinstance(payload, dict):
            raise ValueError("NPC status payload is not an object")
        return {str(entity_id): bool(flag) for entity_id, flag in payload.items()}

    def save(self) -> None:
        timestamp = int(self._time() * 1000)
        self._store.set(
            RESOLVED_KEY,
            json.dumps(
                {
                    "version": self._version,
                    "timestamp": timestamp,
                    RESOLVED_KEY: {key: entity.to_dict() for key, entity in self._resolved.items()},
                }
            ),
        )
        self._store.set(
            NPC_KEY,
            json.dumps({"version": self._version, "timestamp": timestamp, NPC_KEY: dict(self._npc_statuses)}),
        )
        self._dirty = False

    def flush(self) -> None:
        if self._dirty:
            self.save()

    def _maybe_save(self) -> None:
        self._dirty = True
        if self._save_probability > 0.0 and self._random() < self._save_probability:
            self.save()

    # Resolution -----------------------------------------------------------

    @property
    def resolver_calls(self) -> int:
        return self._resolver_calls

    def cached(self, entity_id: str) -> Optional[ResolvedEntity]:
        return self._resolved.get(entity_id)

    async def resolve(self, entity_id: str, hint: Optional[Mapping[str, Any]] = None) -> ResolvedEntity:
        if not entity_id:
            return fallback_entity("")
        cached = self._resolved.get(entity_id)
        if cached is not None:
            return cached
        server_entity = self._entity_from_hint(entity_id, hint)
        if server_entity is not None:
            return self._remember(entity_id, server_entity)
        pending = self._inflight.get(entity_id)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch(entity_id, hint, self._generation))
            self._inflight[entity_id] = pending
            pending.add_done_callback(lambda future, key=entity_id: self._release_inflight(key, future))
        return await asyncio.shield(pending)

    def _release_inflight(self, entity_id: str, future: "asyncio.Future[ResolvedEntity]") -> None:
        if self._inflight.get(entity_id) is future:
            del self._inflight[entity_id]

    async def _fetch(self, entity_id: str, hint: Optional[Mapping[str, Any]], generation: int) -> ResolvedEntity:
        if self._resolver is None:
            return fallback_entity(entity_id)
        self._resolver_calls += 1
        try:
            raw = await maybe_await(self._resolver(entity_id, hint))
            entity = self._coerce(entity_id, raw)
        except Exception as exc:  # resolver errors degrade to the heuristic name
            self._failed_at[entity_id] = self._time()
            _LOGGER.debug("Entity resolution failed for %s, using fallback: %s", entity_id, exc)
            return fallback_entity(entity_id)
        if generation != self._generation:
            return entity
        self._failed_at.pop(entity_id, None)
        if self._log_resolution:
            _LOGGER.debug("Resolved %s -> %s (%s)", entity_id, entity.display_name, entity.match_method)
        return self._remember(entity_id, entity)

    @staticmethod
    def _coerce(entity_id: str, raw: Any) -> ResolvedEntity:
        if isinstance(raw, ResolvedEntity):
            return ResolvedEntity(
                display_name=raw.display_name,
                is_npc=raw.is_npc,
                category=raw.category,
                match_method=raw.match_method,
                original_id=entity_id,
            )
        if isinstance(raw, Mapping):
            return ResolvedEntity.from_dict(raw, original_id=entity_id)
        raise ValueError(f"resolver returned {type(raw).__name__} for {entity_id!r}")

    @staticmethod
    def _entity_from_hint(entity_id: str, hint: Optional[Mapping[str, Any]]) -> Optional[ResolvedEntity]:
        if not hint:
            return None
        friendly = hint.get("friendlyName") or hint.get("friendly_name")
        if not friendly:
            return None
        return ResolvedEntity(
            display_name=str(friendly),
            is_npc=bool(hint.get("isNpc") or hint.get("is_npc")),
            category=map_server_category(hint.get("category") or hint.get("entity_category")),
            match_method="server",
            original_id=entity_id,
        )

    def _remember(self, entity_id: str, entity: ResolvedEntity) -> ResolvedEntity:
        existing = self._resolved.setdefault(entity_id, entity)
        self._display_names[entity_id] = existing.display_name
        if existing is entity:
            self._maybe_save()
        return existing

    async def resolve_many(self, entity_ids: Iterable[str]) -> Dict[str, ResolvedEntity]:
        unique = list(dict.fromkeys(item for item in entity_ids if item))
        results = await asyncio.gather(*(self.resolve(entity_id) for entity_id in unique))
        return dict(zip(unique, results))

    async def resolve_events(self, events: Iterable[KillEvent]) -> int:
        """Eagerly resolve every id the events reference; returns the id count."""
        entity_ids = collect_entity_ids(events)
        missing = [entity_id for entity_id in entity_ids if entity_id not in self._resolved]
        if missing:
            await self.resolve_many(missing)
        return len(entity_ids)

    # Synchronous accessors -------------------------------------------------

    def get_display_name(self, entity_id: str) -> str:
        resolved = self._resolved.get(entity_id)
        if resolved is not None:
            return resolved.display_name
        name = self._display_names.get(entity_id)
        if name is None:
            name = clean_entity_name(entity_id)
            if entity_id:
                self._display_names[entity_id] = name
        self._resolve_in_background(entity_id)
        return name

    def is_npc(self, entity_id: str) -> bool:
        resolved = self._resolved.get(entity_id)
        if resolved is not None:
            return resolved.is_npc
        legacy = self._npc_statuses.get(entity_id)
        if legacy is not None:
            return legacy
        self._resolve_in_background(entity_id)
        return False

    def filter_npcs(self, entity_ids: Iterable[str]) -> List[str]:
        return [entity_id for entity_id in entity_ids if not self.is_npc(entity_id)]

    async def check_npc(self, entity_id: str) -> bool:
        if entity_id in self._npc_statuses:
            return self._npc_statuses[entity_id]
        if self._npc_checker is None or not entity_id:
            return False
        try:
            flag = bool(await maybe_await(self._npc_checker(entity_id)))
        except Exception as exc:  # classification errors answer "not an NPC"
            _LOGGER.debug("NPC check failed for %s: %s", entity_id, exc)
            return False
        self._npc_statuses.setdefault(entity_id, flag)
        self._maybe_save()
        return self._npc_statuses[entity_id]

    def _resolve_in_background(self, entity_id: str) -> None:
        if not entity_id or self._resolver is None:
            return
        if entity_id in self._inflight or entity_id in self._resolved:
            return
        failed_at = self._failed_at.get(entity_id)
        if failed_at is not None and self._time() - failed_at < FAILED_RETRY_SECONDS:
            return
        task = self._spawn(self.resolve(entity_id))
        if task is None:
            return
        self._background.add(task)
        add_done = getattr(task, "add_done_callback", None)
        if callable(add_done):
            add_done(self._background.discard)

    # Invalidation and diagnostics -----------------------------------------

    def invalidate(self) -> None:
        """Drop every cached answer after a definitions update."""
        self._generation += 1
        self._resolved.clear()
        self._display_names.clear()
        self._npc_statuses.clear()
        self._inflight.clear()
        self._failed_at.clear()
        self.save()
        _LOGGER.info("Entity caches invalidated")

    async def check_definitions_version(self, fetch_version: Callable[[], Any]) -> bool:
        """Invalidate when the host reports a new definitions version."""
        try:
            current = await maybe_await(fetch_version())
        except Exception as exc:  # version probe is advisory
            _LOGGER.warning("Failed to check definitions version: %s", exc)
            return False
        if current is None or current == "":
            return False
        current = str(current)
        if current == self._definitions_version:
            return False
        changed = self._definitions_version is not None
        self._definitions_version = current
        if changed:
            self.invalidate()
        return changed

    def stats(self) -> Dict[str, Any]:
        entities = list(self._resolved.values())
        return {
            "total": len(entities),
            "by_method": dict(Counter(entity.match_method for entity in entities)),
            "by_category": dict(Counter(entity.category for entity in entities)),
            "npc_count": sum(1 for entity in entities if entity.is_npc),
            "legacy_npc_statuses": len(self._npc_statuses),
            "resolver_calls": self._resolver_calls,
        }

    async def drain_background(self) -> None:
        pending = [task for task in self._background if isinstance(task, asyncio.Future)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
