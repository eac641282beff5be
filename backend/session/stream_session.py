r"""
Outbound stream session (transmit side).

State machine:

    IDLE --start()--> STARTING --ack(success)--> ACTIVE
      ^                  |  \                      |
      |                  |   ack(failure) -------->|
      +----stop() / force_idle() <-----------------+

Rules:
- start() only from IDLE, only when the connection is READY and the channel
  is not busy with a remote transmitter. Violations raise synchronously.
- stream_id is bound only between a successful ack and stop/force_idle.
- packet_counter starts at 0 on every ACTIVE period and increments by exactly
  one per packet written (u32 wraparound).
- stop() is idempotent; force_idle() never touches the socket.
- A start abandoned before its ack (stop, ack timeout) keeps its seq; a
  late successful ack for it is answered with stop_stream so the upstream
  does not keep a stream nobody feeds.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from audio.pipeline import AudioPipeline, CodecError
from constants import CMD_START_STREAM, CMD_STOP_STREAM, PACKET_ID_START, PACKET_LOG_INTERVAL
from observability.logger import log_event
from observability.metrics import cancel_timer, report_count, start_timer, stop_timer
from protocol.framing import encode_frame, next_packet_id
from protocol.upstream_messages import start_stream_fields, stop_stream_fields
from session.errors import NotReady, StreamStateError, UpstreamBusy
from upstream.connection import UpstreamConnection
from upstream.events import StreamStartAck


class StreamState(str, Enum):
    """Transmit lifecycle of a StreamSession."""
    IDLE = "IDLE"
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"


class StreamDirection(str, Enum):
    """Direction of a voice stream relative to the relay."""
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


class StreamSession:
    """
    One outbound voice stream on an UpstreamConnection.

    A connection has at most one StreamSession; reusing it across talk
    bursts is what enforces local mutual exclusion.
    """

    direction = StreamDirection.OUTBOUND

    def __init__(
        self,
        *,
        connection: UpstreamConnection,
        pipeline: AudioPipeline,
    ) -> None:
        self._connection = connection
        self._pipeline = pipeline

        self._state = StreamState.IDLE
        self._stream_id: int | None = None
        self._packet_counter = PACKET_ID_START
        self._start_seq: int | None = None
        self._abandoned_seq: int | None = None
        self._ack_timer_id: str | None = None
        self.packets_sent = 0

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def stream_id(self) -> int | None:
        return self._stream_id

    @property
    def packet_counter(self) -> int:
        return self._packet_counter

    @property
    def is_active(self) -> bool:
        return self._state is StreamState.ACTIVE

    def log_context(self) -> dict[str, Any]:
        return {
            "connection_id": self._connection.connection_id,
            "direction": self.direction.value,
            "stream_state": self._state.value,
            "stream_id": self._stream_id,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        *,
        target: str | None = None,
        target_type: str | None = None,
    ) -> int:
        """
        Request a new outbound stream.

        Returns:
            The seq of the start_stream command.

        Raises:
            StreamStateError if not IDLE.
            NotReady if the connection is not READY or the send failed.
            UpstreamBusy if a remote party is transmitting.
        """
        if self._state is not StreamState.IDLE:
            raise StreamStateError(f"cannot start stream from {self._state.value}")

        if not self._connection.is_ready:
            raise NotReady("Not connected to upstream")

        if self._connection.channel.busy:
            speaker = self._connection.channel.speaker or "another user"
            raise UpstreamBusy(f"Channel busy: {speaker} is transmitting")

        # Claim STARTING before awaiting the send so a second start() in the
        # meantime is rejected and an early ack is still accepted
        self._state = StreamState.STARTING
        self._ack_timer_id = start_timer(
            "stream_start_ack_ms", connection_id=self._connection.connection_id,
        )

        seq = await self._connection.send(
            CMD_START_STREAM,
            **start_stream_fields(target=target, target_type=target_type),
        )
        if seq is None:
            self._to_idle("start_send_failed")
            raise NotReady("Upstream socket is not open")

        if self._state is StreamState.STARTING:
            self._start_seq = seq
        elif self._state is StreamState.IDLE:
            # Stopped while the command was in flight
            self._abandoned_seq = seq

        log_event({**self.log_context(), "event_type": "STREAM_STARTING", "seq": seq})
        return seq

    def on_start_ack(self, ack: StreamStartAck) -> bool:
        """
        Apply a start_stream reply.

        Returns:
            True if the session became ACTIVE. Acks outside STARTING, or
            for a different seq, are ignored.
        """
        if self._state is not StreamState.STARTING:
            log_event({
                **self.log_context(),
                "event_type": "STREAM_ACK_IGNORED",
                "level": "DEBUG",
                "ack_stream_id": ack.stream_id,
            })
            return False

        if ack.seq is not None and self._start_seq is not None and ack.seq != self._start_seq:
            log_event({
                **self.log_context(),
                "event_type": "STREAM_ACK_SEQ_MISMATCH",
                "expected_seq": self._start_seq,
                "ack_seq": ack.seq,
            })
            return False

        if not ack.success or ack.stream_id is None:
            self._to_idle("start_rejected")
            return False

        stop_timer(self._ack_timer_id, details={"stream_id": ack.stream_id})
        self._ack_timer_id = None

        self._stream_id = ack.stream_id
        self._packet_counter = PACKET_ID_START
        self.packets_sent = 0
        self._state = StreamState.ACTIVE

        log_event({**self.log_context(), "event_type": "STREAM_ACTIVE"})
        return True

    async def push_audio(self, pcm_frame: bytes) -> bool:
        """
        Encode, frame and send one codec frame of PCM16.

        Returns:
            True if a packet was written. False if the session is not ACTIVE,
            the codec failed, or the socket is closed.

        Raises:
            InvalidFrameSize if pcm_frame is not exactly one codec frame.
        """
        if self._state is not StreamState.ACTIVE or self._stream_id is None:
            return False

        try:
            payload = self._pipeline.encode_frame(pcm_frame)
        except CodecError as e:
            log_event({
                **self.log_context(),
                "event_type": "AUDIO_ENCODE_FAILED",
                "level": "WARNING",
                "error": str(e),
            })
            return False

        frame = encode_frame(
            stream_id=self._stream_id,
            packet_id=self._packet_counter,
            payload=payload,
        )

        if not await self._connection.send_binary(frame):
            return False

        self._packet_counter = next_packet_id(self._packet_counter)
        self.packets_sent += 1

        if self.packets_sent % PACKET_LOG_INTERVAL == 0:
            report_count(
                "audio_packets_sent",
                self.packets_sent,
                connection_id=self._connection.connection_id,
                details={"stream_id": self._stream_id},
            )

        return True

    async def stop(self) -> None:
        """
        End the stream. stop_stream is sent only when ACTIVE.

        Idempotent: a no-op when IDLE.
        """
        if self._state is StreamState.IDLE:
            return

        stream_id = self._stream_id
        was_active = self._state is StreamState.ACTIVE
        pending_seq = None if was_active else self._start_seq

        # State first, so audio racing with the stop is dropped
        self._to_idle("stopped")
        self._abandoned_seq = pending_seq

        if was_active and stream_id is not None:
            await self._connection.send(CMD_STOP_STREAM, **stop_stream_fields(stream_id))

    def force_idle(self, reason: str, *, socket_lost: bool = False) -> None:
        """
        Return to IDLE without sending anything (connection loss, timeouts).

        socket_lost forgets any unacknowledged start as well, since seqs
        restart on the next socket.
        """
        if socket_lost:
            self._abandoned_seq = None
        if self._state is StreamState.IDLE:
            return
        pending_seq = self._start_seq if self._state is StreamState.STARTING else None
        self._to_idle(reason)
        if not socket_lost:
            self._abandoned_seq = pending_seq

    def is_abandoned_ack(self, ack: StreamStartAck) -> bool:
        """True for a successful ack answering a start that was given up on."""
        if self._abandoned_seq is None or not ack.success or ack.stream_id is None:
            return False
        if ack.seq is None:
            return self._state is not StreamState.STARTING
        return ack.seq == self._abandoned_seq

    async def stop_abandoned(self, ack: StreamStartAck) -> bool:
        """
        Close a stream the upstream opened after its start was abandoned.

        Returns:
            True if stop_stream was sent for the ack's stream_id.
        """
        if not self.is_abandoned_ack(ack):
            return False

        self._abandoned_seq = None
        log_event({
            **self.log_context(),
            "event_type": "STREAM_ABANDONED_STOP",
            "ack_seq": ack.seq,
            "ack_stream_id": ack.stream_id,
        })
        await self._connection.send(CMD_STOP_STREAM, **stop_stream_fields(ack.stream_id))
        return True

    def _to_idle(self, reason: str) -> None:
        log_event({
            **self.log_context(),
            "event_type": "STREAM_IDLE",
            "reason": reason,
            "packets_sent": self.packets_sent,
        })
        cancel_timer(self._ack_timer_id)
        self._ack_timer_id = None
        self._state = StreamState.IDLE
        self._stream_id = None
        self._start_seq = None
        self._packet_counter = PACKET_ID_START
        self._pipeline.reset()
