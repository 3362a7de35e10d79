from __future__ import annotations

import logging
import os
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from killfeed_client.debug_config import DEBUG_CONFIG_ENABLED

ROOT_LOGGER_NAME = "KillFeed.Client"
LOG_FILENAME = "killfeed-client.log"
_HANDLER_MARKER = "_killfeed_file_handler"


class ReleaseLogLevelFilter(logging.Filter):
    """Promote debug logs to INFO in release builds so diagnostics stay visible."""

    def __init__(self, release_mode: bool) -> None:
        super().__init__()
        self._release_mode = release_mode

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging shim
        if self._release_mode and record.levelno == logging.DEBUG:
            record.levelno = logging.INFO
            record.levelname = "INFO"
        return True


def resolve_log_level(debug_enabled: bool) -> int:
    """Return a log level consistent with the client debug behavior."""
    return logging.DEBUG if debug_enabled else logging.INFO


def get_logger(component: str) -> logging.Logger:
    """Return the component logger nested under the client root logger."""
    logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
    logger.setLevel(resolve_log_level(DEBUG_CONFIG_ENABLED))
    if not any(isinstance(item, ReleaseLogLevelFilter) for item in logger.filters):
        logger.addFilter(ReleaseLogLevelFilter(release_mode=not DEBUG_CONFIG_ENABLED))
    return logger


def resolve_logs_dir(base_path: Path, log_dir_name: str = "KillFeed") -> Path:
    """
    Resolve the directory to store client logs.

    Strategy:
    - Use KILLFEED_LOG_DIR if set.
    - Fall back to XDG state/cache locations, then `cwd/logs/<log_dir_name>`.
    - Final fallback: tempdir/<log_dir_name>.
    `base_path` is only used to anchor relative overrides.
    """
    candidates = []

    env_override = os.environ.get("KILLFEED_LOG_DIR")
    if env_override:
        override = Path(env_override).expanduser()
        if not override.is_absolute():
            override = base_path.resolve() / override
        candidates.append(override)

    state_home = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    cache_home = Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))
    candidates.append(state_home / "killfeed" / "logs")
    candidates.append(cache_home / "killfeed" / "logs")
    candidates.append(Path.cwd() / "logs")

    for base in candidates:
        try:
            target = base / log_dir_name
            target.mkdir(parents=True, exist_ok=True)
            return target
        except OSError:
            continue

    temp_fallback = Path(tempfile.gettempdir()) / "killfeed" / log_dir_name
    temp_fallback.mkdir(parents=True, exist_ok=True)
    return temp_fallback


def build_rotating_file_handler(
    log_dir: Path,
    filename: str,
    *,
    retention: int = 5,
    max_bytes: int = 512 * 1024,
    formatter: Optional[logging.Formatter] = None,
) -> logging.Handler:
    """Construct a rotating file handler with sane defaults."""
    retention = max(1, retention)
    backup_count = max(0, retention - 1)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    return handler


def configure_client_logging(log_dir: Path, *, retention: int = 5) -> logging.Logger:
    """Attach the rotating file handler to the client root logger once."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(resolve_log_level(DEBUG_CONFIG_ENABLED))
    for handler in root.handlers:
        if getattr(handler, _HANDLER_MARKER, False):
            return root
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    handler = build_rotating_file_handler(log_dir, LOG_FILENAME, retention=retention, formatter=formatter)
    setattr(handler, _HANDLER_MARKER, True)
    root.addHandler(handler)
    return root
