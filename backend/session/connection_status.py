"""
Connection status tracking for upstream voice-channel connections.

Lifecycle: DISCONNECTED -> CONNECTING -> AWAITING_AUTH -> READY

This is pure data owned by UpstreamConnection.
"""
from enum import Enum

class UpstreamState(str, Enum):
    """
    Upstream connection lifecycle status.

    Separate from and independent of the StreamSession state.
    Only READY permits starting an outbound stream.
    """
    DISCONNECTED = "DISCONNECTED"    # No socket (initial, closed, or awaiting reconnect)
    CONNECTING = "CONNECTING"        # Socket being opened
    AWAITING_AUTH = "AWAITING_AUTH"  # Logon sent, no confirmation yet
    READY = "READY"                  # Authenticated and channel online
