"""
Audio codec boundary.

The relay treats the codec as an opaque capability:

    encode(pcm16 frame) -> opus packet
    decode(opus packet) -> pcm16 frame

OpusCodec wraps libopus through opuslib. The native library is loaded when
the codec is constructed, not at import time, so the rest of the relay (and
its tests) never require libopus.
"""

from __future__ import annotations

from typing import Any, Protocol

from constants import CODEC_CHANNELS, CODEC_SAMPLE_RATE_HZ


class AudioCodec(Protocol):
    """Codec contract consumed by AudioPipeline."""

    def encode(self, pcm_bytes: bytes, frame_size: int) -> bytes:
        """Encode exactly `frame_size` samples of PCM16 into one packet."""
        ...

    def decode(self, packet: bytes, frame_size: int) -> bytes:
        """Decode one packet into at most `frame_size` samples of PCM16."""
        ...


class OpusCodec:
    """
    Opus encoder/decoder pair (48kHz, mono, VOIP application).

    One instance per upstream binding; encoder state carries across the
    packets of a stream.
    """

    def __init__(
        self,
        *,
        sample_rate_hz: int = CODEC_SAMPLE_RATE_HZ,
        channels: int = CODEC_CHANNELS,
    ) -> None:
        import opuslib  # pylint: disable=import-outside-toplevel

        self._encoder: Any = opuslib.Encoder(
            sample_rate_hz,
            channels,
            opuslib.APPLICATION_VOIP,
        )
        self._decoder: Any = opuslib.Decoder(sample_rate_hz, channels)

    def encode(self, pcm_bytes: bytes, frame_size: int) -> bytes:
        return bytes(self._encoder.encode(pcm_bytes, frame_size))

    def decode(self, packet: bytes, frame_size: int) -> bytes:
        return bytes(self._decoder.decode(packet, frame_size))
