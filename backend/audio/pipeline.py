"""
Audio pipeline adapter (browser samples -> codec frames -> opaque payload).

Invariants:
- Browser audio arrives as float samples in [-1.0, 1.0], mono, 48 kHz
- Codec input is PCM16 signed little-endian, exactly one codec frame
  (960 samples / 20 ms) per encode call
- Codec output is opaque; it is handed to the packet framer unchanged

Design:
- FrameAligner rechunks arbitrary-sized browser chunks into exact frames
  (no loss inside a stream; a partial tail is dropped on reset)
- encode_frame() enforces the frame size as an explicit precondition
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

from audio.codec import AudioCodec
from constants import (
    CODEC_MAX_PACKET_SAMPLES,
    CODEC_SAMPLE_WIDTH_BYTES,
    CODEC_SAMPLES_PER_FRAME,
    PCM16_MAX,
    PCM16_MIN,
    PCM16_SCALE,
)

Samples = Union[Sequence[float], bytes, bytearray, np.ndarray]


class InvalidFrameSize(ValueError):
    """
    Raised when a PCM frame handed to the codec is not exactly one codec
    frame long. Callers must chunk audio first (see FrameAligner).
    """


class CodecError(RuntimeError):
    """Raised when the codec fails on a correctly sized frame."""


# -------------------------
# Sample conversion
# -------------------------

def samples_to_float32(samples: Samples) -> np.ndarray:
    """
    Normalize a browser audio chunk to a float32 numpy array.

    bytes are interpreted as float32 little-endian (a Float32Array buffer).
    """
    if isinstance(samples, (bytes, bytearray)):
        usable = len(samples) - (len(samples) % 4)
        # Truncated sample; dropped rather than misaligning the stream
        return np.frombuffer(bytes(samples[:usable]), dtype="<f4").astype(np.float32)

    return np.asarray(samples, dtype=np.float32).reshape(-1)


def float32_to_pcm16(samples: np.ndarray) -> bytes:
    """
    Convert float samples to PCM16 little-endian bytes.

    Values are scaled by 32768 and clamped to the int16 range.
    """
    scaled = np.clip(samples * PCM16_SCALE, PCM16_MIN, PCM16_MAX)
    return scaled.astype("<i2").tobytes()


# -------------------------
# Frame alignment
# -------------------------

class FrameAligner:
    """Rechunk samples to exact codec-frame boundaries without loss."""

    def __init__(self, frame_samples: int = CODEC_SAMPLES_PER_FRAME) -> None:
        if frame_samples <= 0:
            raise ValueError("frame_samples must be > 0")
        self.frame_samples = frame_samples
        self._buffer = np.zeros(0, dtype=np.float32)

    @property
    def buffered_samples(self) -> int:
        return int(self._buffer.size)

    def add(self, samples: np.ndarray) -> list[np.ndarray]:
        """Add samples and return complete frames."""
        self._buffer = np.concatenate((self._buffer, samples.astype(np.float32)))

        frames: list[np.ndarray] = []
        while self._buffer.size >= self.frame_samples:
            frames.append(self._buffer[:self.frame_samples])
            self._buffer = self._buffer[self.frame_samples:]

        return frames

    def clear(self) -> None:
        """Drop any partial frame."""
        self._buffer = np.zeros(0, dtype=np.float32)


# -------------------------
# Pipeline
# -------------------------

class AudioPipeline:
    """
    Converts downstream audio into codec frames and back.

    One pipeline per upstream binding. Not thread-safe (event loop only).
    """

    def __init__(
        self,
        codec: AudioCodec,
        *,
        frame_samples: int = CODEC_SAMPLES_PER_FRAME,
    ) -> None:
        self._codec = codec
        self.frame_samples = frame_samples
        self.frame_bytes = frame_samples * CODEC_SAMPLE_WIDTH_BYTES
        self._aligner = FrameAligner(frame_samples)

    @property
    def buffered_samples(self) -> int:
        return self._aligner.buffered_samples

    def pcm_frames(self, samples: Samples) -> list[bytes]:
        """
        Convert a browser chunk of any length into zero or more PCM16
        frames of exactly one codec frame each.
        """
        audio = samples_to_float32(samples)
        if audio.size == 0:
            return []
        return [float32_to_pcm16(frame) for frame in self._aligner.add(audio)]

    def encode_frame(self, pcm_frame: bytes) -> bytes:
        """
        Encode exactly one PCM16 codec frame.

        Raises:
            InvalidFrameSize if pcm_frame is not exactly one frame.
            CodecError if the codec rejects the frame.
        """
        if len(pcm_frame) != self.frame_bytes:
            raise InvalidFrameSize(
                f"PCM frame length {len(pcm_frame)} != {self.frame_bytes}"
            )

        try:
            return self._codec.encode(pcm_frame, self.frame_samples)
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise CodecError(f"{type(e).__name__}: {e}") from e

    def decode_packet(self, payload: bytes) -> bytes:
        """
        Decode one codec packet into PCM16 bytes.

        Inbound packets are not bound to our frame size, so the decoder gets
        room for the longest packet the codec allows.
        """
        try:
            return self._codec.decode(payload, CODEC_MAX_PACKET_SAMPLES)
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise CodecError(f"{type(e).__name__}: {e}") from e

    def reset(self) -> None:
        """Forget any partial frame (called when a stream ends)."""
        self._aligner.clear()
