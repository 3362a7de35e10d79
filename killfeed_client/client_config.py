"""Configuration helpers for the kill feed client."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from killfeed_client.debug_config import coerce_log_retention

SETTINGS_FILENAME = "killfeed_settings.json"


@dataclass(frozen=True)
class FeedSettings:
    """Tuning values for the live feed, search and connection handling."""

    max_ui_events: int = 250
    initial_limit: int = 100
    page_size: int = 25
    reset_threshold: int = 200
    reset_limit: int = 100
    highlight_ms: int = 1000
    pagination_cooldown_ms: int = 5000
    search_debounce_ms: int = 300
    search_page_size: int = 25
    cache_save_probability: float = 0.15
    connect_watchdog_ms: int = 10000
    connected_banner_ms: int = 3000
    client_log_retention: int = 5


def _int(value: Any, fallback: int, *, minimum: int) -> int:
    if value is None:
        return fallback
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(minimum, numeric)


def _probability(value: Any, fallback: float) -> float:
    if value is None:
        return fallback
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    return min(1.0, max(0.0, numeric))


def load_feed_settings(settings_path: Path) -> FeedSettings:
    """Read feed tuning from killfeed_settings.json if it exists."""
    defaults = FeedSettings()
    try:
        raw = settings_path.read_text(encoding="utf-8")
    except OSError:
        return defaults

    try:
        data: Dict[str, Any] = json.loads(raw)
    except json.JSONDecodeError:
        return defaults
    if not isinstance(data, dict):
        return defaults

    return FeedSettings(
        max_ui_events=_int(data.get("max_ui_events"), defaults.max_ui_events, minimum=10),
        initial_limit=_int(data.get("initial_limit"), defaults.initial_limit, minimum=1),
        page_size=_int(data.get("page_size"), defaults.page_size, minimum=1),
        reset_threshold=_int(data.get("reset_threshold"), defaults.reset_threshold, minimum=0),
        reset_limit=_int(data.get("reset_limit"), defaults.reset_limit, minimum=1),
        highlight_ms=_int(data.get("highlight_ms"), defaults.highlight_ms, minimum=0),
        pagination_cooldown_ms=_int(
            data.get("pagination_cooldown_ms"), defaults.pagination_cooldown_ms, minimum=100
        ),
        search_debounce_ms=_int(data.get("search_debounce_ms"), defaults.search_debounce_ms, minimum=0),
        search_page_size=_int(data.get("search_page_size"), defaults.search_page_size, minimum=1),
        cache_save_probability=_probability(data.get("cache_save_probability"), defaults.cache_save_probability),
        connect_watchdog_ms=_int(data.get("connect_watchdog_ms"), defaults.connect_watchdog_ms, minimum=1000),
        connected_banner_ms=_int(data.get("connected_banner_ms"), defaults.connected_banner_ms, minimum=0),
        client_log_retention=coerce_log_retention(
            data.get("client_log_retention"), defaults.client_log_retention
        ),
    )
