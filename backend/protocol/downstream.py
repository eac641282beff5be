"""
Downstream (browser) event protocol.

Inbound JSON text frames, discriminated by "type":

    connect      {credentials: {token, channel, username?, password?}}
                 (credential fields may also be sent at the top level)
    begin_talk   {for?, target_type?}  (optional addressee of the stream)
    audio_chunk  {samples: [float, ...]}
    end_talk     {}
    disconnect   {}

Inbound binary frames are audio chunks: float32 little-endian samples.

Legacy event names from earlier browser clients are accepted as aliases:
zello_connect, start_ptt, audio_data, stop_ptt.

Outbound JSON text frames:

    status          {connected, channel, user_count}
    speaker_update  {speaker | null}
    log             {text}
    error           {message}

Inbound audio is delivered to the browser as binary frames.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from config import UpstreamCredentials


class DownstreamProtocolError(ValueError):
    """Raised when a downstream event is malformed. The event is rejected."""


class ClientIntent(str, Enum):
    CONNECT = "connect"
    BEGIN_TALK = "begin_talk"
    AUDIO_CHUNK = "audio_chunk"
    END_TALK = "end_talk"
    DISCONNECT = "disconnect"


_ALIASES: dict[str, ClientIntent] = {
    "connect": ClientIntent.CONNECT,
    "zello_connect": ClientIntent.CONNECT,
    "begin_talk": ClientIntent.BEGIN_TALK,
    "start_ptt": ClientIntent.BEGIN_TALK,
    "audio_chunk": ClientIntent.AUDIO_CHUNK,
    "audio_data": ClientIntent.AUDIO_CHUNK,
    "end_talk": ClientIntent.END_TALK,
    "stop_ptt": ClientIntent.END_TALK,
    "disconnect": ClientIntent.DISCONNECT,
}


@dataclass(frozen=True)
class ClientEvent:
    """A parsed downstream event."""
    intent: ClientIntent
    credentials: UpstreamCredentials | None = None
    samples: Any = None
    target: str | None = None
    target_type: str | None = None


# -------------------------
# Inbound
# -------------------------

def parse_client_text(payload: str) -> ClientEvent:
    """
    Parse one inbound JSON text frame.

    Raises:
        DownstreamProtocolError on invalid JSON, unknown type, or missing
        required fields.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DownstreamProtocolError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise DownstreamProtocolError("expected a JSON object")

    msg_type = data.get("type")
    intent = _ALIASES.get(msg_type) if isinstance(msg_type, str) else None
    if intent is None:
        raise DownstreamProtocolError(f"unknown message type: {msg_type!r}")

    if intent is ClientIntent.CONNECT:
        return ClientEvent(intent=intent, credentials=parse_credentials(data))

    if intent is ClientIntent.AUDIO_CHUNK:
        samples = data.get("samples", data.get("data"))
        if not isinstance(samples, list):
            raise DownstreamProtocolError("audio_chunk requires a samples list")
        return ClientEvent(intent=intent, samples=samples)

    if intent is ClientIntent.BEGIN_TALK:
        return ClientEvent(
            intent=intent,
            target=_optional_str(data, "for"),
            target_type=_optional_str(data, "target_type"),
        )

    return ClientEvent(intent=intent)


def parse_client_binary(payload: bytes) -> ClientEvent:
    """A binary frame is always an audio chunk of float32 LE samples."""
    return ClientEvent(intent=ClientIntent.AUDIO_CHUNK, samples=bytes(payload))


def parse_credentials(data: dict[str, Any]) -> UpstreamCredentials | None:
    """
    Extract credentials from a connect event.

    Returns None when no token was supplied (valid under the shared
    connection policy, where the server's own credentials are used).
    """
    source = data.get("credentials")
    if source is None:
        source = data
    if not isinstance(source, dict):
        raise DownstreamProtocolError("credentials must be an object")

    token = source.get("token") or source.get("auth_token")
    if not token:
        return None
    if not isinstance(token, str):
        raise DownstreamProtocolError("token must be a string")

    channels = source.get("channels") or ()
    if not isinstance(channels, (list, tuple)):
        raise DownstreamProtocolError("channels must be a list")

    return UpstreamCredentials(
        auth_token=token,
        channel=source.get("channel") or None,
        channels=tuple(str(c) for c in channels),
        username=source.get("username") or None,
        password=source.get("password") or None,
    )


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise DownstreamProtocolError(f"{key} must be a string")
    return value


# -------------------------
# Outbound
# -------------------------

def status_message(*, connected: bool, channel: str, user_count: int) -> dict[str, Any]:
    return {
        "type": "status",
        "connected": connected,
        "channel": channel,
        "user_count": user_count,
    }


def speaker_message(speaker: str | None) -> dict[str, Any]:
    return {"type": "speaker_update", "speaker": speaker}


def log_message(text: str) -> dict[str, Any]:
    return {"type": "log", "text": text}


def error_message(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}
