"""Release metadata shared by the kill feed client modules."""
from __future__ import annotations

import os
from typing import Optional

__version__ = "0.4.0"

DEV_MODE_ENV_VAR = "KILLFEED_DEV_MODE"

_TRUE_TOKENS = {"1", "true", "yes", "on"}
_FALSE_TOKENS = {"0", "false", "no", "off"}


def is_dev_build(version: Optional[str] = None) -> bool:
    """Return True for dev builds; the env var wins over the version suffix."""

    value = os.getenv(DEV_MODE_ENV_VAR)
    if value is not None:
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    label = (version if version is not None else __version__) or ""
    return "dev" in label.lower()
