"""Banner text for the connection indicator."""
from __future__ import annotations

import math

from killfeed_client.models import ConnectionState


def countdown_seconds(state: ConnectionState) -> int:
    if state.countdown_ms <= 0:
        return 0
    return int(math.ceil(state.countdown_ms / 1000.0))


def format_status(state: ConnectionState) -> str:
    if state.status == "connected":
        return "Connected"
    if state.status == "connecting":
        return "Connecting..."
    if state.status == "disconnected":
        seconds = countdown_seconds(state)
        if seconds <= 0:
            return f"Disconnected (attempt {state.attempts})"
        return f"Disconnected. Reconnecting in {seconds}s (attempt {state.attempts})"
    return "Connection error"


def banner_visible(state: ConnectionState) -> bool:
    """The banner hides once the transient "Connected" notice has expired."""
    if state.status == "connected":
        return state.show_connected
    return True
