"""
Upstream event definitions delivered from UpstreamConnection to the gateway.

Rules:
- Events describe facts that have occurred on the upstream socket.
- Events carry data only (no behavior).
- Every event carries the connection_id it originated from.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from session.connection_status import UpstreamState
from session.errors import ErrorKind


class UpstreamEventType(str, Enum):
    """
    Canonical upstream event types understood by the gateway.
    """
    STATUS_CHANGED = "STATUS_CHANGED"
    SPEAKER_CHANGED = "SPEAKER_CHANGED"
    STREAM_START_ACK = "STREAM_START_ACK"
    INCOMING_AUDIO = "INCOMING_AUDIO"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    CONNECTION_LOST = "CONNECTION_LOST"


@dataclass(frozen=True)
class UpstreamEvent:
    """Base class for all upstream events."""
    event_type: UpstreamEventType
    connection_id: str


@dataclass(frozen=True)
class StatusChanged(UpstreamEvent):
    """
    Connection or channel presence changed.

    connected is True only when the connection is READY.
    """
    state: UpstreamState
    connected: bool
    channel: str
    users_online: int


@dataclass(frozen=True)
class SpeakerChanged(UpstreamEvent):
    """A remote party started (speaker set) or stopped (speaker None) talking."""
    speaker: str | None
    stream_id: int | None = None


@dataclass(frozen=True)
class StreamStartAck(UpstreamEvent):
    """
    Reply to a start_stream command.

    seq is the sequence number the reply refers to, when the service echoes it.
    """
    stream_id: int | None
    success: bool
    seq: int | None = None


@dataclass(frozen=True)
class IncomingAudio(UpstreamEvent):
    """One inbound audio packet, codec payload untouched."""
    stream_id: int
    packet_id: int
    payload: bytes


@dataclass(frozen=True)
class UpstreamError(UpstreamEvent):
    """
    Non-fatal protocol-level error reported by (or about) the service.

    The connection stays open unless kind is TIMEOUT on the handshake, in
    which case a ConnectionLost follows.
    """
    kind: ErrorKind
    message: str
    seq: int | None = None


@dataclass(frozen=True)
class ConnectionLost(UpstreamEvent):
    """The socket closed unexpectedly; a reconnect has been scheduled."""
    reason: str
    reconnect_in_s: float
