"""Debug configuration loader for kill feed tracing."""

from __future__ import annotations

import json
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from version import __version__ as KILLFEED_VERSION, is_dev_build

DEBUG_CONFIG_ENABLED = is_dev_build(KILLFEED_VERSION)
CLIENT_LOG_RETENTION_MIN = 1
CLIENT_LOG_RETENTION_MAX = 20


@dataclass(frozen=True)
class DebugConfig:
    trace_enabled: bool = False
    trace_event_ids: tuple[str, ...] = ()
    log_evictions: bool = False
    log_entity_resolution: bool = False

    def traces(self, event_id: str) -> bool:
        if not self.trace_enabled:
            return False
        if not self.trace_event_ids:
            return True
        return event_id in self.trace_event_ids


def coerce_log_retention(value: Any, fallback: int = 5) -> int:
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        return fallback
    if numeric <= 0:
        return CLIENT_LOG_RETENTION_MIN
    if numeric > CLIENT_LOG_RETENTION_MAX:
        return CLIENT_LOG_RETENTION_MAX
    return numeric


def load_dev_settings(path: Path) -> DebugConfig:
    """Load dev-mode-only flags from dev_settings.json."""

    if not DEBUG_CONFIG_ENABLED:
        return DebugConfig()
    defaults = {
        "trace_enabled": False,
        "event_ids": [],
        "log_evictions": False,
        "log_entity_resolution": False,
    }
    needs_write = False
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError:
        raw_data: Any = deepcopy(defaults)
        needs_write = True
    else:
        try:
            raw_data = json.loads(raw_text)
        except json.JSONDecodeError:
            raw_data = deepcopy(defaults)
            needs_write = True
        if not isinstance(raw_data, dict):
            raw_data = {}
            needs_write = True

    data: dict[str, Any] = deepcopy(raw_data)
    for key, default_value in defaults.items():
        if key not in data:
            data[key] = default_value
            needs_write = True

    tracing_section = data.get("tracing")
    if isinstance(tracing_section, dict):
        trace_enabled = bool(tracing_section.get("enabled", False))
        ids_value = tracing_section.get("event_ids")
    else:
        trace_enabled = bool(data.get("trace_enabled", False))
        ids_value = data.get("event_ids")

    event_ids: tuple[str, ...] = ()
    if isinstance(ids_value, (list, tuple, set)):
        cleaned = [str(item).strip() for item in ids_value if isinstance(item, (str, int))]
        event_ids = tuple(filter(None, cleaned))
    elif ids_value is not None:
        single = str(ids_value).strip()
        if single:
            event_ids = (single,)

    normalized = DebugConfig(
        trace_enabled=trace_enabled,
        trace_event_ids=event_ids,
        log_evictions=bool(data.get("log_evictions", False)),
        log_entity_resolution=bool(data.get("log_entity_resolution", False)),
    )

    if needs_write:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        except OSError:
            pass

    return normalized
