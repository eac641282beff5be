# backend/protocol/framing.py
"""
Binary framing for upstream audio packets.

Layout (network byte order), both directions:

    1 byte   type       (0x01 = audio data)
    4 bytes  stream_id  (u32, big-endian)
    4 bytes  packet_id  (u32, big-endian, starts at 0 per stream)
    N bytes  payload    (opaque codec bytes)

The payload length is not stored: one WebSocket message == one packet.
This layout is bit-exact with the voice-channel service and must not change.

Usage example:

    frame = encode_frame(stream_id=42, packet_id=0, payload=opus_packet)
    await connection.send_binary(frame)

    packet = decode_frame(message)
    result = check_sequence_gap(last_id=prev_id, current_id=packet.packet_id)
    if result.gap:
        log_event({
            "event_type": "INBOUND_PACKET_GAP",
            "expected": result.expected,
            "actual": result.actual,
            "gap_size": result.gap_size,
        })
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from constants import (
    PACKET_HEADER_BYTES,
    PACKET_ID_MAX,
    PACKET_ID_START,
    PACKET_TYPE_AUDIO,
    U32_MAX,
)

_HEADER = struct.Struct(">BII")


# -------------------------
# Exceptions
# -------------------------

class BinaryProtocolError(Exception):
    """Base class for binary protocol errors."""


class FramingError(BinaryProtocolError):
    """
    Raised when an inbound binary frame cannot be decoded.

    Indicates a truncated or foreign frame. The frame is unsafe to process
    and must be dropped; the connection stays open.
    """


class UnknownPacketType(FramingError):
    """Raised when the type byte is not the audio packet type."""


class InvalidPacketField(BinaryProtocolError):
    """
    Raised when a stream_id or packet_id does not fit in an unsigned 32-bit
    field. Indicates a caller bug, never inbound data.
    """


# -------------------------
# Packet
# -------------------------

@dataclass(frozen=True)
class AudioPacket:
    """
    A decoded audio packet.

    stream_id:
        Service-assigned stream identifier (provenance of the audio).

    packet_id:
        Per-stream packet counter.

    payload:
        Opaque codec bytes, passed through untouched.
    """
    stream_id: int
    packet_id: int
    payload: bytes


def _check_u32(name: str, value: int) -> None:
    if value < 0 or value > U32_MAX:
        raise InvalidPacketField(f"{name} out of u32 range: {value}")


# -------------------------
# Encode / decode
# -------------------------

def encode_frame(*, stream_id: int, packet_id: int, payload: bytes) -> bytes:
    """Build one binary audio packet."""
    _check_u32("stream_id", stream_id)
    _check_u32("packet_id", packet_id)
    return _HEADER.pack(PACKET_TYPE_AUDIO, stream_id, packet_id) + bytes(payload)


def decode_frame(frame: bytes) -> AudioPacket:
    """
    Decode one binary audio packet.

    Raises:
        FramingError if the frame is shorter than the header.
        UnknownPacketType if the type byte is not 0x01.
    """
    if len(frame) < PACKET_HEADER_BYTES:
        raise FramingError(
            f"frame length {len(frame)} < header length {PACKET_HEADER_BYTES}"
        )

    packet_type, stream_id, packet_id = _HEADER.unpack_from(frame, 0)

    if packet_type != PACKET_TYPE_AUDIO:
        raise UnknownPacketType(f"unknown packet type: 0x{packet_type:02x}")

    return AudioPacket(
        stream_id=stream_id,
        packet_id=packet_id,
        payload=bytes(frame[PACKET_HEADER_BYTES:]),
    )


# -------------------------
# Packet id arithmetic
# -------------------------

def next_packet_id(current: int) -> int:
    """Return the packet id following `current`, wrapping at u32 max."""
    if current >= PACKET_ID_MAX:
        return PACKET_ID_START
    return current + 1


# -------------------------
# Sequence gap detection
# -------------------------

@dataclass(frozen=True)
class SeqCheckResult:
    """
    Result of a packet id continuity check.
    """
    gap: bool
    expected: int
    actual: int

    @property
    def gap_size(self) -> int:
        """
        Number of packets skipped (0 if no gap).

        Handles wraparound correctly.
        """
        if not self.gap:
            return 0

        if self.actual > self.expected:
            return self.actual - self.expected

        # Wraparound
        return (PACKET_ID_MAX - self.expected + 1) + (self.actual - PACKET_ID_START)


def check_sequence_gap(
    *,
    last_id: Optional[int],
    current_id: int,
) -> SeqCheckResult:
    """
    Check whether `current_id` follows `last_id`.

    Pure function; never raises.
    """
    if last_id is None or next_packet_id(last_id) == current_id:
        return SeqCheckResult(
            gap=False,
            expected=current_id,
            actual=current_id,
        )

    return SeqCheckResult(
        gap=True,
        expected=next_packet_id(last_id),
        actual=current_id,
    )
