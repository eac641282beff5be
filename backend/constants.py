"""
PROTOCOL CONSTANTS
------------------
Single source of truth for wire-level and timing invariants of the relay.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Upstream wire values are bit-exact with the voice-channel service contract
  and must not be altered.
"""

from __future__ import annotations

from typing import Final

# =============================================================================
# Codec parameters (Opus, 48kHz mono, 20ms frames)
# =============================================================================

CODEC_NAME: Final[str] = "opus"
CODEC_SAMPLE_RATE_HZ: Final[int] = 48_000
CODEC_CHANNELS: Final[int] = 1
CODEC_FRAME_MS: Final[int] = 20
CODEC_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)

CODEC_SAMPLES_PER_FRAME: Final[int] = (CODEC_SAMPLE_RATE_HZ * CODEC_FRAME_MS) // 1000
CODEC_BYTES_PER_FRAME_PCM: Final[int] = CODEC_SAMPLES_PER_FRAME * CODEC_SAMPLE_WIDTH_BYTES

# Longest Opus packet (120 ms); inbound packets may be longer than our 20ms frames
CODEC_MAX_PACKET_SAMPLES: Final[int] = (CODEC_SAMPLE_RATE_HZ * 120) // 1000

# Base64 Opus codec header announced in start_stream (48kHz, mono, 20ms)
CODEC_HEADER_B64: Final[str] = "gD4BPA=="

# Float → PCM16 scaling used for browser samples
PCM16_SCALE: Final[float] = 32768.0
PCM16_MIN: Final[int] = -32768
PCM16_MAX: Final[int] = 32767

# =============================================================================
# Binary audio packet framing
# =============================================================================
# 1B type + 4B stream_id (u32 BE) + 4B packet_id (u32 BE) + payload

PACKET_TYPE_AUDIO: Final[int] = 0x01
PACKET_TYPE_BYTES: Final[int] = 1
PACKET_STREAM_ID_BYTES: Final[int] = 4
PACKET_ID_BYTES: Final[int] = 4
PACKET_HEADER_BYTES: Final[int] = (
    PACKET_TYPE_BYTES + PACKET_STREAM_ID_BYTES + PACKET_ID_BYTES
)

U32_MAX: Final[int] = 2**32 - 1

PACKET_ID_START: Final[int] = 0
PACKET_ID_MAX: Final[int] = U32_MAX  # u32 wraparound

# =============================================================================
# Upstream JSON protocol
# =============================================================================

SEQ_START: Final[int] = 1

CMD_LOGON: Final[str] = "logon"
CMD_START_STREAM: Final[str] = "start_stream"
CMD_STOP_STREAM: Final[str] = "stop_stream"

EVT_CHANNEL_STATUS: Final[str] = "on_channel_status"
EVT_STREAM_START: Final[str] = "on_stream_start"
EVT_STREAM_STOP: Final[str] = "on_stream_stop"

CHANNEL_STATUS_ONLINE: Final[str] = "online"
STREAM_TYPE_AUDIO: Final[str] = "audio"
UNKNOWN_SPEAKER: Final[str] = "Unknown"

# =============================================================================
# Timing defaults (overridable via AppConfig)
# =============================================================================

DEFAULT_UPSTREAM_URL: Final[str] = "wss://zello.io/ws"
DEFAULT_RECONNECT_DELAY_S: Final[float] = 5.0
DEFAULT_RECONNECT_MAX_DELAY_S: Final[float] = 60.0
DEFAULT_HANDSHAKE_TIMEOUT_S: Final[float] = 15.0
DEFAULT_STREAM_START_TIMEOUT_S: Final[float] = 5.0
DEFAULT_PORT: Final[int] = 3000

# Upstream socket limits
UPSTREAM_MAX_MESSAGE_BYTES: Final[int] = 2**20

# =============================================================================
# Observability
# =============================================================================

PACKET_LOG_INTERVAL: Final[int] = 50
PAYLOAD_PREVIEW_CHARS: Final[int] = 100

