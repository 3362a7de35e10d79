"""Contract of the event bridge the client core consumes.

The bridge is provided by the host application (IPC to the log tailer and the
server relay). Members may be missing when a feature is not available in the
host; callers treat a missing member as a disabled feature.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from killfeed_client.logging_utils import get_logger
from killfeed_client.models import KillEvent, MalformedEventError

_LOGGER = get_logger("Upstream")

LiveEventCallback = Callable[[Optional[Any], str], None]
StatusCallback = Callable[..., None]


class UpstreamUnavailable(RuntimeError):
    """The bridge does not expose the requested operation."""


class Upstream(Protocol):
    async def get_recent_events(self, limit: int) -> Any:
        ...

    async def load_more_events(self, page_size: int, offset: int) -> Any:
        ...

    async def search_events(self, query: str, page_size: int, offset: int) -> Any:
        ...

    async def resolve_entity(self, entity_id: str, hint: Optional[Mapping[str, Any]] = None) -> Any:
        ...

    async def is_npc_entity(self, entity_id: str) -> bool:
        ...

    def on_live_event(self, callback: LiveEventCallback) -> Any:
        ...

    def on_connection_status(self, callback: StatusCallback) -> Any:
        ...

    def request_reconnect(self) -> Any:
        ...


def bridge_member(upstream: Any, name: str) -> Optional[Callable[..., Any]]:
    """Return the bound bridge operation or None when it is not exposed."""
    if upstream is None:
        return None
    member = getattr(upstream, name, None)
    return member if callable(member) else None


def require_member(upstream: Any, name: str) -> Callable[..., Any]:
    member = bridge_member(upstream, name)
    if member is None:
        raise UpstreamUnavailable(f"bridge does not expose '{name}'")
    return member


def coerce_events(raw_events: Iterable[Any], *, context: str) -> List[KillEvent]:
    """Build KillEvents, dropping malformed payloads with a diagnostic."""
    events: List[KillEvent] = []
    for raw in raw_events:
        try:
            events.append(KillEvent.from_payload(raw))
        except MalformedEventError as exc:
            _LOGGER.warning("Dropped malformed event from %s: %s", context, exc)
    return events


@dataclass(frozen=True)
class EventPage:
    events: Tuple[KillEvent, ...]
    has_more: bool

    @classmethod
    def from_result(cls, result: Any, *, context: str) -> "EventPage":
        if result is None:
            return cls(events=(), has_more=False)
        if isinstance(result, Mapping):
            raw_events = result.get("events") or ()
            has_more = result.get("hasMore", result.get("has_more", False))
            if not isinstance(raw_events, Sequence) or isinstance(raw_events, (str, bytes)):
                raise MalformedEventError(f"{context} returned a non-list 'events' value")
            return cls(events=tuple(coerce_events(raw_events, context=context)), has_more=bool(has_more))
        if isinstance(result, Sequence) and not isinstance(result, (str, bytes)):
            events = tuple(coerce_events(result, context=context))
            return cls(events=events, has_more=bool(events))
        raise MalformedEventError(f"{context} returned unexpected {type(result).__name__}")


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def dispatch(value: Any) -> Any:
    """Schedule an awaitable on the running loop, if any; closes it otherwise."""
    if not inspect.isawaitable(value):
        return value
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        close = getattr(value, "close", None)
        if callable(close):
            close()
        _LOGGER.debug("No running loop; dropped %r", value)
        return None
    return asyncio.ensure_future(value, loop=loop)
