"""Value types shared by the event store, search overlay and entity cache."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

EventOrigin = Literal["local", "server"]

DEATH_TYPES = frozenset(
    {"Soft", "Hard", "Combat", "Collision", "Crash", "BleedOut", "Suffocation", "Unknown"}
)
ENTITY_CATEGORIES = frozenset({"ship", "weapon", "object", "npc", "location", "unknown"})
MATCH_METHODS = frozenset({"server", "exact", "pattern", "fallback"})

# camelCase producer key -> attribute name
_FIELD_KEYS: Dict[str, str] = {
    "deathType": "death_type",
    "vehicleType": "vehicle_type",
    "vehicleModel": "vehicle_model",
    "location": "location",
    "weapon": "weapon",
    "damageType": "damage_type",
    "isPlayerInvolved": "is_player_involved",
}
_KNOWN_KEYS = frozenset(
    {"id", "timestamp", "killers", "victims", "metadata"} | set(_FIELD_KEYS) | set(_FIELD_KEYS.values())
)
_MERGEABLE_FIELDS = (
    "killers",
    "victims",
    "death_type",
    "vehicle_type",
    "vehicle_model",
    "location",
    "weapon",
    "damage_type",
)


class MalformedEventError(ValueError):
    """Raised when a producer payload cannot be turned into a KillEvent."""


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


@dataclass(frozen=True)
class EventSource:
    """Provenance flags stamped by the store, never by the producer."""

    server: bool = False
    local: bool = False
    external: bool = False

    @classmethod
    def for_origin(cls, origin: EventOrigin) -> "EventSource":
        if origin == "server":
            return cls(server=True, external=True)
        return cls(local=True)

    def union(self, other: "EventSource") -> "EventSource":
        return EventSource(
            server=self.server or other.server,
            local=self.local or other.local,
            external=self.external or other.external,
        )

    def to_dict(self) -> Dict[str, bool]:
        return {"server": self.server, "local": self.local, "external": self.external}


def _entity_tuple(raw: Any, key: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,) if raw else ()
    if not isinstance(raw, (list, tuple)):
        raise MalformedEventError(f"'{key}' must be a list of entity ids")
    return tuple(str(item) for item in raw if item is not None and str(item))


def _text(raw: Any) -> str:
    if raw is None:
        return ""
    return str(raw)


@dataclass(frozen=True)
class KillEvent:
    """One kill/destruction event as shown in the feed."""

    id: str
    timestamp: str
    killers: Tuple[str, ...] = ()
    victims: Tuple[str, ...] = ()
    death_type: str = "Unknown"
    vehicle_type: str = ""
    vehicle_model: str = ""
    location: str = ""
    weapon: str = ""
    damage_type: str = ""
    is_player_involved: bool = False
    metadata: EventSource = field(default_factory=EventSource)
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "KillEvent":
        if isinstance(payload, KillEvent):
            return payload
        if not isinstance(payload, Mapping):
            raise MalformedEventError(f"expected a mapping, got {type(payload).__name__}")
        event_id = payload.get("id")
        if not isinstance(event_id, (str, int)) or not str(event_id).strip():
            raise MalformedEventError("event is missing 'id'")
        timestamp = payload.get("timestamp")
        if not isinstance(timestamp, str) or not timestamp.strip():
            raise MalformedEventError(f"event {event_id} is missing 'timestamp'")
        try:
            parse_timestamp(timestamp)
        except ValueError as exc:
            raise MalformedEventError(f"event {event_id} has invalid timestamp {timestamp!r}") from exc

        values: Dict[str, Any] = {}
        for camel, attr in _FIELD_KEYS.items():
            raw = payload.get(camel, payload.get(attr))
            if attr == "is_player_involved":
                values[attr] = bool(raw)
            else:
                values[attr] = _text(raw)
        if values["death_type"] not in DEATH_TYPES:
            values["death_type"] = "Unknown"

        extra = {key: value for key, value in payload.items() if key not in _KNOWN_KEYS}
        return cls(
            id=str(event_id),
            timestamp=timestamp,
            killers=_entity_tuple(payload.get("killers"), "killers"),
            victims=_entity_tuple(payload.get("victims"), "victims"),
            extra=extra,
            **values,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "timestamp": self.timestamp,
                "killers": list(self.killers),
                "victims": list(self.victims),
                "deathType": self.death_type,
                "vehicleType": self.vehicle_type,
                "vehicleModel": self.vehicle_model,
                "location": self.location,
                "weapon": self.weapon,
                "damageType": self.damage_type,
                "isPlayerInvolved": self.is_player_involved,
                "metadata": {"source": self.metadata.to_dict()},
            }
        )
        return payload

    def with_source(self, origin: EventOrigin) -> "KillEvent":
        return dataclasses.replace(self, metadata=EventSource.for_origin(origin))

    def merged_with(self, newer: "KillEvent") -> "KillEvent":
        """Return `newer` carrying the provenance of both observations.

        Fields `newer` leaves blank keep the value already known for the event.
        """
        kept: Dict[str, Any] = {}
        for name in _MERGEABLE_FIELDS:
            value = getattr(newer, name)
            if value in ("", (), "Unknown"):
                kept[name] = getattr(self, name)
        return dataclasses.replace(
            newer,
            **kept,
            is_player_involved=self.is_player_involved or newer.is_player_involved,
            metadata=self.metadata.union(newer.metadata),
            extra={**self.extra, **newer.extra},
        )

    def entity_ids(self) -> Tuple[str, ...]:
        candidates = (
            *self.killers,
            *self.victims,
            self.vehicle_type,
            self.vehicle_model,
            self.weapon,
            self.location,
        )
        return tuple(item for item in candidates if item)

    @property
    def occurred_at(self) -> datetime:
        return parse_timestamp(self.timestamp)


@dataclass(frozen=True)
class ResolvedEntity:
    """Display name and classification for a raw entity identifier."""

    display_name: str
    is_npc: bool = False
    category: str = "unknown"
    match_method: str = "fallback"
    original_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "isNpc": self.is_npc,
            "category": self.category,
            "matchMethod": self.match_method,
            "originalId": self.original_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, original_id: Optional[str] = None) -> "ResolvedEntity":
        display_name = data.get("displayName", data.get("display_name"))
        if not isinstance(display_name, str) or not display_name:
            raise ValueError("resolved entity is missing 'displayName'")
        category = str(data.get("category") or "unknown")
        match_method = str(data.get("matchMethod", data.get("match_method")) or "fallback")
        return cls(
            display_name=display_name,
            is_npc=bool(data.get("isNpc", data.get("is_npc", False))),
            category=category if category in ENTITY_CATEGORIES else "unknown",
            match_method=match_method if match_method in MATCH_METHODS else "fallback",
            original_id=original_id if original_id is not None else str(data.get("originalId") or ""),
        )


@dataclass(frozen=True)
class ConnectionState:
    status: str = "connecting"
    attempts: int = 0
    next_delay_ms: int = 0
    countdown_ms: int = 0
    show_connected: bool = False


@dataclass(frozen=True)
class StoreChange:
    """Notification delivered synchronously to store subscribers."""

    kind: str
    event_ids: Tuple[str, ...] = ()
    scroll_to_top: bool = False
    play_sound: bool = False
