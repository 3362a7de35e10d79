from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from killfeed_client.client_config import SETTINGS_FILENAME, FeedSettings, load_feed_settings
from killfeed_client.debug_config import DebugConfig, load_dev_settings
from killfeed_client.entity_cache import EntityResolutionCache
from killfeed_client.event_store import EventStore
from killfeed_client.feed_controller import FeedController
from killfeed_client.kv_store import JsonFileKeyValueStore, KeyValueStore
from killfeed_client.reconnection import ReconnectionController
from killfeed_client.search_overlay import SearchOverlay
from killfeed_client.upstream import bridge_member

CACHE_FILENAME = "entity_cache.json"
DEV_SETTINGS_FILENAME = "dev_settings.json"
CACHE_PATH_ENV_VAR = "KILLFEED_CACHE_PATH"


@dataclass
class AppContext:
    root: Path
    settings_path: Path
    cache_path: Path
    dev_settings_path: Path
    settings: FeedSettings
    debug_config: DebugConfig
    kv_store: KeyValueStore
    cache: EntityResolutionCache
    store: EventStore
    search: SearchOverlay
    reconnection: ReconnectionController
    controller: FeedController

    def teardown(self) -> None:
        self.controller.teardown()


def build_app_context(
    *,
    root: Path,
    upstream: Any,
    scheduler: Any,
    kv_store: Optional[KeyValueStore] = None,
    random_source: Optional[Callable[[], float]] = None,
) -> AppContext:
    """Construct every client component around one upstream and one timer source.

    `scheduler` supplies `after(ms, callback)` and `after_cancel(handle)`
    (`AsyncioScheduler` or `QtScheduler`).
    """
    settings_path = root / SETTINGS_FILENAME
    cache_path = Path(os.environ.get(CACHE_PATH_ENV_VAR, root / CACHE_FILENAME))
    dev_settings_path = root / DEV_SETTINGS_FILENAME

    settings = load_feed_settings(settings_path)
    debug_config = load_dev_settings(dev_settings_path)
    store_backend: KeyValueStore = kv_store if kv_store is not None else JsonFileKeyValueStore(cache_path)

    extra: dict[str, Any] = {}
    if random_source is not None:
        extra["random_source"] = random_source

    cache = EntityResolutionCache(
        store_backend,
        resolver=bridge_member(upstream, "resolve_entity"),
        npc_checker=bridge_member(upstream, "is_npc_entity"),
        save_probability=settings.cache_save_probability,
        log_resolution=debug_config.log_entity_resolution,
        **extra,
    )
    store = EventStore(
        upstream,
        after=scheduler.after,
        after_cancel=scheduler.after_cancel,
        prepare=cache.resolve_events,
        max_ui_events=settings.max_ui_events,
        highlight_ms=settings.highlight_ms,
        pagination_cooldown_ms=settings.pagination_cooldown_ms,
        debug_config=debug_config,
    )
    search = SearchOverlay(
        upstream,
        after=scheduler.after,
        after_cancel=scheduler.after_cancel,
        prepare=cache.resolve_events,
        page_size=settings.search_page_size,
        debounce_ms=settings.search_debounce_ms,
        cooldown_ms=settings.pagination_cooldown_ms,
    )
    reconnection = ReconnectionController(
        after=scheduler.after,
        after_cancel=scheduler.after_cancel,
        request_reconnect=bridge_member(upstream, "request_reconnect"),
        watchdog_ms=settings.connect_watchdog_ms,
        connected_banner_ms=settings.connected_banner_ms,
        **extra,
    )
    controller = FeedController(store, search, cache, reconnection=reconnection, settings=settings)

    return AppContext(
        root=root,
        settings_path=settings_path,
        cache_path=cache_path,
        dev_settings_path=dev_settings_path,
        settings=settings,
        debug_config=debug_config,
        kv_store=store_backend,
        cache=cache,
        store=store,
        search=search,
        reconnection=reconnection,
        controller=controller,
    )
