from .app_context import AppContext, build_app_context
from .entity_cache import EntityResolutionCache
from .event_store import EventStore
from .feed_controller import FeedController
from .models import ConnectionState, KillEvent, MalformedEventError, ResolvedEntity, StoreChange
from .reconnection import ReconnectionController
from .search_overlay import SearchOverlay
from .timers import AsyncioScheduler

__all__ = [
    "AppContext",
    "build_app_context",
    "AsyncioScheduler",
    "ConnectionState",
    "EntityResolutionCache",
    "EventStore",
    "FeedController",
    "KillEvent",
    "MalformedEventError",
    "ReconnectionController",
    "ResolvedEntity",
    "SearchOverlay",
    "StoreChange",
]
