"""Minimal string key-value stores used for cache persistence."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Optional, Protocol

from killfeed_client.logging_utils import get_logger

_LOGGER = get_logger("KeyValueStore")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """Dictionary-backed store for tests and headless runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self.writes = 0

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self.writes += 1

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """Keeps every key in one JSON object on disk, rewritten atomically."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._data: Dict[str, str] = {}
        self._load_existing()

    @property
    def path(self) -> Path:
        return self._path

    def _load_existing(self) -> None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as exc:
            _LOGGER.warning("Ignoring unreadable store %s: %s", self._path, exc)
            return
        if not isinstance(raw, dict):
            _LOGGER.warning("Ignoring store %s: top-level value is not an object", self._path)
            return
        self._data = {str(key): value for key, value in raw.items() if isinstance(value, str)}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._write_snapshot()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._write_snapshot()

    def _write_snapshot(self) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")
            tmp_path.replace(self._path)
            return True
        except OSError as exc:
            _LOGGER.warning("Failed to write store %s: %s", self._path, exc)
            return False
