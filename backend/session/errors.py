"""
Relay error taxonomy.

Every error kind is recoverable at the connection level; none is
process-fatal. Kinds are surfaced to downstream clients as a single
human-readable error message.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """
    Classification of relay failures.

    PROTOCOL_PARSE:   malformed inbound JSON (logged, ignored)
    FRAMING:          binary frame shorter than header (dropped)
    AUTH:             upstream rejected the logon
    PROTOCOL:         any other error payload from upstream
    CONNECTION_LOST:  socket closed unexpectedly (reconnect scheduled)
    UPSTREAM_BUSY:    local transmit attempted while the channel is occupied
    NOT_READY:        talk/audio attempted before the connection is READY
    STREAM_REJECTED:  upstream refused a start_stream
    TIMEOUT:          handshake or stream-start acknowledgment never arrived
    INVALID_REQUEST:  malformed downstream event
    """
    PROTOCOL_PARSE = "protocol_parse"
    FRAMING = "framing"
    AUTH = "auth"
    PROTOCOL = "protocol"
    CONNECTION_LOST = "connection_lost"
    UPSTREAM_BUSY = "upstream_busy"
    NOT_READY = "not_ready"
    STREAM_REJECTED = "stream_rejected"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"


class RelayError(Exception):
    """Base class for errors raised synchronously by relay operations."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotReady(RelayError):
    """The upstream connection is not READY (talk or audio rejected)."""
    kind = ErrorKind.NOT_READY


class UpstreamBusy(RelayError):
    """
    The channel is occupied by another transmitter.

    Rejected synchronously; the request is not queued.
    """
    kind = ErrorKind.UPSTREAM_BUSY


class StreamStateError(RelayError):
    """A stream operation was called from a state that does not allow it."""
    kind = ErrorKind.INVALID_REQUEST
