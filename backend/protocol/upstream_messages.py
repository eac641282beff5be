"""
Upstream JSON control protocol.

Outbound commands (every command carries the connection's next seq):

    logon        {seq, auth_token, [username, password], channel | channels}
    start_stream {seq, type:"audio", codec:"opus", codec_header, packet_duration, [for, target_type]}
    stop_stream  {seq, stream_id}

Inbound messages are classified by the fields they carry, checked in order:

    refresh_token present          -> AUTH_OK
    command == on_channel_status   -> CHANNEL_STATUS
    command == on_stream_start     -> STREAM_START
    command == on_stream_stop      -> STREAM_STOP
    error present                  -> ERROR
    stream_id present              -> STREAM_ACK
    seq present                    -> REPLY (plain success/failure reply)
    otherwise                      -> UNKNOWN

on_stream_start also carries a stream_id, so command checks come first.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from config import UpstreamCredentials
from constants import (
    CHANNEL_STATUS_ONLINE,
    CODEC_FRAME_MS,
    CODEC_HEADER_B64,
    CODEC_NAME,
    EVT_CHANNEL_STATUS,
    EVT_STREAM_START,
    EVT_STREAM_STOP,
    STREAM_TYPE_AUDIO,
    U32_MAX,
    UNKNOWN_SPEAKER,
)


class ProtocolParseError(ValueError):
    """
    Raised when an inbound text frame is not a JSON object.

    The message is logged and dropped; the connection stays open.
    """


class MessageKind(str, Enum):
    """Classification of an inbound upstream JSON message."""
    AUTH_OK = "auth_ok"
    CHANNEL_STATUS = "channel_status"
    STREAM_START = "stream_start"
    STREAM_STOP = "stream_stop"
    ERROR = "error"
    STREAM_ACK = "stream_ack"
    REPLY = "reply"
    UNKNOWN = "unknown"


# -------------------------
# Outbound
# -------------------------

# Field builders return everything except "command" and "seq", which the
# connection adds when it allocates the sequence number.

def logon_fields(credentials: UpstreamCredentials) -> dict[str, Any]:
    """Fields of the logon command for the given credentials."""
    fields: dict[str, Any] = {"auth_token": credentials.auth_token}

    if credentials.username:
        fields["username"] = credentials.username
    if credentials.password:
        fields["password"] = credentials.password

    if credentials.channels:
        fields["channels"] = list(credentials.channels)
    elif credentials.channel:
        fields["channel"] = credentials.channel

    return fields


def start_stream_fields(
    *,
    target: str | None = None,
    target_type: str | None = None,
) -> dict[str, Any]:
    """
    Fields of a start_stream command with the fixed Opus parameters.

    `target` / `target_type` address a single recipient; omitted for a
    channel-wide transmission.
    """
    fields: dict[str, Any] = {
        "type": STREAM_TYPE_AUDIO,
        "codec": CODEC_NAME,
        "codec_header": CODEC_HEADER_B64,
        "packet_duration": CODEC_FRAME_MS,
    }
    if target is not None:
        fields["for"] = target
    if target_type is not None:
        fields["target_type"] = target_type
    return fields


def stop_stream_fields(stream_id: int) -> dict[str, Any]:
    return {"stream_id": stream_id}


def build_command(command: str, seq: int, fields: dict[str, Any]) -> dict[str, Any]:
    """Assemble a full command. command and seq always come first."""
    return {"command": command, "seq": seq, **fields}


def encode_command(msg: dict[str, Any]) -> str:
    """Serialize a command for a text WebSocket frame."""
    return json.dumps(msg, separators=(",", ":"))


# -------------------------
# Inbound
# -------------------------

def parse_message(raw: str) -> dict[str, Any]:
    """
    Parse an inbound text frame.

    Raises:
        ProtocolParseError if the frame is not valid JSON or not an object.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolParseError(f"expected JSON object, got {type(data).__name__}")

    return data


def classify_message(data: dict[str, Any]) -> MessageKind:
    """Classify a parsed inbound message (see module docstring for order)."""
    if data.get("refresh_token"):
        return MessageKind.AUTH_OK

    command = data.get("command")
    if command == EVT_CHANNEL_STATUS:
        return MessageKind.CHANNEL_STATUS
    if command == EVT_STREAM_START:
        return MessageKind.STREAM_START
    if command == EVT_STREAM_STOP:
        return MessageKind.STREAM_STOP

    if data.get("error"):
        return MessageKind.ERROR
    if data.get("stream_id") is not None:
        return MessageKind.STREAM_ACK
    if "seq" in data:
        return MessageKind.REPLY

    return MessageKind.UNKNOWN


def message_seq(data: dict[str, Any]) -> int | None:
    """The seq a reply refers to, if present and integral."""
    seq = data.get("seq")
    return seq if isinstance(seq, int) and not isinstance(seq, bool) else None


def is_channel_online(data: dict[str, Any]) -> bool:
    return data.get("status") == CHANNEL_STATUS_ONLINE


def speaker_name(data: dict[str, Any]) -> str:
    """Display identity of a remote transmitter."""
    return data.get("from") or data.get("contactName") or UNKNOWN_SPEAKER


def users_online(data: dict[str, Any]) -> int:
    value = data.get("users_online", 0)
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def stream_id_of(data: dict[str, Any]) -> int | None:
    """
    Integral stream_id carried by a message, if any.

    Values outside u32 cannot be framed, so they read as absent.
    """
    value = data.get("stream_id")
    if value is None or isinstance(value, bool):
        return None
    try:
        stream_id = int(value)
    except (TypeError, ValueError):
        return None
    if stream_id < 0 or stream_id > U32_MAX:
        return None
    return stream_id
