"""
Upstream voice-channel connection.

Core model:
- One UpstreamConnection owns exactly one WebSocket to the voice-channel
  service at a time.
- connect() opens the socket, sends logon with seq=1 and waits for the
  service to confirm (refresh_token or channel online) -> READY.
- Inbound text frames are classified and turned into UpstreamEvents.
- Inbound binary frames are decoded and forwarded as IncomingAudio with
  the codec payload untouched.
- Unexpected closure -> DISCONNECTED, ConnectionLost emitted, reconnect
  scheduled after the policy delay. Reconnect is unbounded.
- close() is deliberate: no reconnect, no ConnectionLost.

Design constraints:
- Connection must not know about downstream clients or stream sessions.
- All upstream facts reach the gateway through emit_event, awaited in order.
- Sending on a closed socket is a logged no-op, never an exception.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect

from config import UpstreamCredentials
from constants import (
    CMD_LOGON,
    CMD_START_STREAM,
    PACKET_LOG_INTERVAL,
    PAYLOAD_PREVIEW_CHARS,
    SEQ_START,
    UPSTREAM_MAX_MESSAGE_BYTES,
)
from observability.logger import log_event
from observability.metrics import cancel_timer, report_count, start_timer, stop_timer
from protocol.framing import FramingError, check_sequence_gap, decode_frame
from protocol.upstream_messages import (
    MessageKind,
    ProtocolParseError,
    build_command,
    classify_message,
    encode_command,
    is_channel_online,
    logon_fields,
    message_seq,
    parse_message,
    speaker_name,
    stream_id_of,
    users_online,
)
from session.connection_status import UpstreamState
from session.errors import ErrorKind
from upstream.events import (
    ConnectionLost,
    IncomingAudio,
    SpeakerChanged,
    StatusChanged,
    StreamStartAck,
    UpstreamError,
    UpstreamEvent,
    UpstreamEventType,
)
from upstream.reconnect import (
    ReconnectPolicy,
    next_attempt,
    reset_attempt,
)

EmitFn = Callable[[UpstreamEvent], Awaitable[None]]
ConnectFn = Callable[..., Awaitable[Any]]


@dataclass
class ChannelStatus:
    """
    Presence of the channel as last reported by the service.

    busy / speaker track a remote transmitter (inbound stream), which blocks
    local transmission.
    """
    name: str = ""
    users_online: int = 0
    online: bool = False
    busy: bool = False
    speaker: str | None = None
    inbound_stream_id: int | None = None


class UpstreamConnection:
    """
    One WebSocket session to the voice-channel service.

    Public interface:
    - connect(): open socket + logon
    - handle_message(raw): process one inbound frame (text or binary)
    - send(command, **fields) -> seq | None
    - send_binary(frame) -> bool
    - close(): deliberate shutdown, no reconnect
    """

    def __init__(
        self,
        *,
        connection_id: str,
        url: str,
        credentials: UpstreamCredentials,
        emit_event: EmitFn,
        reconnect_policy: ReconnectPolicy,
        handshake_timeout_s: float = 0.0,
        connect_fn: ConnectFn | None = None,
    ) -> None:
        self.connection_id = connection_id
        self._url = url
        self._credentials = credentials
        self._emit = emit_event
        self._policy = reconnect_policy
        self._handshake_timeout_s = handshake_timeout_s
        self._connect_fn: ConnectFn = connect_fn or ws_connect

        self._state = UpstreamState.DISCONNECTED
        self._ws: Any = None
        self._seq = SEQ_START
        self._pending: dict[int, str] = {}  # seq -> command awaiting reply
        self.channel = ChannelStatus()

        self._recv_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._handshake_task: asyncio.Task[None] | None = None
        self._handshake_timer_id: str | None = None

        self._attempt = reset_attempt()
        self._closing = False
        self._last_inbound_packet: dict[int, int] = {}  # stream_id -> packet_id
        self.packets_received = 0

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> UpstreamState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def is_ready(self) -> bool:
        return self._state is UpstreamState.READY

    @property
    def next_seq(self) -> int:
        """The seq the next command will carry."""
        return self._seq

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def log_context(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "state": self._state.value,
            "channel": self.channel.name,
        }

    def status_event(self) -> StatusChanged:
        """Snapshot of the current status as an event."""
        return StatusChanged(
            event_type=UpstreamEventType.STATUS_CHANGED,
            connection_id=self.connection_id,
            state=self._state,
            connected=self.is_ready,
            channel=self.channel.name,
            users_online=self.channel.users_online,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the socket and send logon.

        Only valid from DISCONNECTED; otherwise a logged no-op. A connect
        failure is handled exactly like an unexpected close.
        """
        if self._state is not UpstreamState.DISCONNECTED:
            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_CONNECT_IGNORED",
                "level": "DEBUG",
            })
            return

        self._closing = False
        self._set_state(UpstreamState.CONNECTING)
        await self._emit(self.status_event())

        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_CONNECTING",
            "url": self._url,
            "attempt": self._attempt.attempt,
            "credentials": self._credentials.describe(),
        })

        try:
            ws = await self._connect_fn(self._url, max_size=UPSTREAM_MAX_MESSAGE_BYTES)
        except Exception as e:  # pylint: disable=broad-exception-caught
            if self._closing:
                return
            await self._on_connection_lost(f"connect_failed: {e!r}")
            return

        if self._closing:
            # close() ran while the handshake was in flight
            await _close_quietly(ws)
            return

        self._ws = ws
        self._seq = SEQ_START
        self._pending.clear()
        self._last_inbound_packet.clear()

        log_event({**self.log_context(), "event_type": "UPSTREAM_WS_OPENED"})

        self._set_state(UpstreamState.AWAITING_AUTH)
        self._handshake_timer_id = start_timer(
            "upstream_handshake_ms", connection_id=self.connection_id,
        )
        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        self._start_handshake_timeout()

        await self.send(CMD_LOGON, **logon_fields(self._credentials))
        await self._emit(self.status_event())

    async def close(self) -> None:
        """
        Deliberate shutdown. No reconnect, no ConnectionLost event.

        Idempotent.
        """
        self._closing = True

        tasks = [
            t for t in (self._reconnect_task, self._handshake_task, self._recv_task)
            if t is not None
        ]
        self._reconnect_task = None
        self._handshake_task = None
        self._recv_task = None
        for task in tasks:
            _cancel_unless_current(task)

        ws = self._ws
        self._ws = None
        if ws is not None:
            await _close_quietly(ws)

        cancel_timer(self._handshake_timer_id)
        self._handshake_timer_id = None

        self._pending.clear()
        self.channel = ChannelStatus()
        self._set_state(UpstreamState.DISCONNECTED)

        current = asyncio.current_task()
        waitable = [t for t in tasks if t is not current and not t.done()]
        if waitable:
            await asyncio.gather(*waitable, return_exceptions=True)

        log_event({**self.log_context(), "event_type": "UPSTREAM_CLOSED"})

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, command: str, **fields: Any) -> int | None:
        """
        Send a JSON command with the next sequence number.

        Returns:
            The seq used, or None if the socket is not open or the write
            failed (logged, never raised).
        """
        ws = self._ws
        if ws is None:
            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_SEND_WHILE_CLOSED",
                "level": "WARNING",
                "command": command,
            })
            return None

        seq = self._seq
        self._seq += 1
        msg = build_command(command, seq, fields)

        try:
            await ws.send(encode_command(msg))
        except Exception as e:  # pylint: disable=broad-exception-caught
            # The receive loop observes the closure and drives reconnect
            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_SEND_FAILED",
                "level": "WARNING",
                "command": command,
                "seq": seq,
                "error": repr(e),
            })
            return None

        self._pending[seq] = command
        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_COMMAND_SENT",
            "level": "DEBUG",
            "command": command,
            "seq": seq,
        })
        return seq

    async def send_binary(self, frame: bytes) -> bool:
        """Write one raw binary frame. No-op (False) if the socket is not open."""
        ws = self._ws
        if ws is None:
            return False

        try:
            await ws.send(frame)
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_BINARY_SEND_FAILED",
                "level": "WARNING",
                "error": repr(e),
            })
            return False
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, raw: str | bytes) -> None:
        """Process one inbound WebSocket message."""
        if isinstance(raw, (bytes, bytearray, memoryview)):
            await self._handle_binary(bytes(raw))
            return

        try:
            data = parse_message(raw)
        except ProtocolParseError as e:
            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_PROTOCOL_PARSE_ERROR",
                "level": "WARNING",
                "error": str(e),
                "payload_preview": raw[:PAYLOAD_PREVIEW_CHARS],
            })
            return

        kind = classify_message(data)

        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_MESSAGE",
            "level": "DEBUG",
            "kind": kind.value,
            "command": data.get("command"),
            "seq": data.get("seq"),
        })

        if kind is MessageKind.AUTH_OK:
            self._pending.pop(message_seq(data) or -1, None)
            log_event({**self.log_context(), "event_type": "UPSTREAM_AUTHENTICATED"})
            self._mark_ready()
            await self._emit(self.status_event())

        elif kind is MessageKind.CHANNEL_STATUS:
            await self._handle_channel_status(data)

        elif kind is MessageKind.STREAM_START:
            speaker = speaker_name(data)
            self.channel.busy = True
            self.channel.speaker = speaker
            self.channel.inbound_stream_id = stream_id_of(data)
            await self._emit(SpeakerChanged(
                event_type=UpstreamEventType.SPEAKER_CHANGED,
                connection_id=self.connection_id,
                speaker=speaker,
                stream_id=self.channel.inbound_stream_id,
            ))

        elif kind is MessageKind.STREAM_STOP:
            self.channel.busy = False
            self.channel.speaker = None
            self.channel.inbound_stream_id = None
            self._last_inbound_packet.clear()
            await self._emit(SpeakerChanged(
                event_type=UpstreamEventType.SPEAKER_CHANGED,
                connection_id=self.connection_id,
                speaker=None,
                stream_id=stream_id_of(data),
            ))

        elif kind is MessageKind.ERROR:
            await self._handle_error(data)

        elif kind is MessageKind.STREAM_ACK:
            seq = message_seq(data)
            if seq is not None:
                self._pending.pop(seq, None)
            await self._emit(StreamStartAck(
                event_type=UpstreamEventType.STREAM_START_ACK,
                connection_id=self.connection_id,
                stream_id=stream_id_of(data),
                success=data.get("success", True) is not False,
                seq=seq,
            ))

        elif kind is MessageKind.REPLY:
            await self._handle_reply(data)

        else:
            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_UNHANDLED_MESSAGE",
                "level": "DEBUG",
                "keys": sorted(data.keys()),
            })

    async def _handle_binary(self, frame: bytes) -> None:
        try:
            packet = decode_frame(frame)
        except FramingError as e:
            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_FRAMING_ERROR",
                "level": "WARNING",
                "error": str(e),
                "payload_len": len(frame),
            })
            return

        gap = check_sequence_gap(
            last_id=self._last_inbound_packet.get(packet.stream_id),
            current_id=packet.packet_id,
        )
        if gap.gap:
            log_event({
                **self.log_context(),
                "event_type": "INBOUND_PACKET_GAP",
                "stream_id": packet.stream_id,
                "expected": gap.expected,
                "actual": gap.actual,
                "gap_size": gap.gap_size,
            })
        self._last_inbound_packet[packet.stream_id] = packet.packet_id

        self.packets_received += 1
        if self.packets_received % PACKET_LOG_INTERVAL == 0:
            report_count(
                "audio_packets_received",
                self.packets_received,
                connection_id=self.connection_id,
                details={"stream_id": packet.stream_id},
            )

        await self._emit(IncomingAudio(
            event_type=UpstreamEventType.INCOMING_AUDIO,
            connection_id=self.connection_id,
            stream_id=packet.stream_id,
            packet_id=packet.packet_id,
            payload=packet.payload,
        ))

    async def _handle_channel_status(self, data: dict[str, Any]) -> None:
        self.channel.name = data.get("channel") or self.channel.name
        self.channel.users_online = users_online(data)
        self.channel.online = is_channel_online(data)

        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_CHANNEL_STATUS",
            "status": data.get("status"),
            "users_online": self.channel.users_online,
        })

        if self.channel.online:
            self._mark_ready()
        elif self._state is UpstreamState.READY:
            # Socket stays up; the service will report online again
            self._set_state(UpstreamState.AWAITING_AUTH)

        await self._emit(self.status_event())

    async def _handle_error(self, data: dict[str, Any]) -> None:
        seq = message_seq(data)
        command = self._pending.pop(seq, None) if seq is not None else None

        if command == CMD_LOGON:
            kind = ErrorKind.AUTH
        elif command == CMD_START_STREAM:
            kind = ErrorKind.STREAM_REJECTED
        else:
            kind = ErrorKind.PROTOCOL

        message = str(data.get("error"))
        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_ERROR",
            "level": "WARNING",
            "kind": kind.value,
            "seq": seq,
            "error": message,
        })

        await self._emit(UpstreamError(
            event_type=UpstreamEventType.UPSTREAM_ERROR,
            connection_id=self.connection_id,
            kind=kind,
            message=message,
            seq=seq,
        ))

    async def _handle_reply(self, data: dict[str, Any]) -> None:
        seq = message_seq(data)
        command = self._pending.pop(seq, None) if seq is not None else None
        success = data.get("success", True) is not False

        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_REPLY",
            "level": "DEBUG",
            "seq": seq,
            "command": command,
            "success": success,
        })

        # A start_stream refused without an error text still ends the attempt
        if command == CMD_START_STREAM and not success:
            await self._emit(StreamStartAck(
                event_type=UpstreamEventType.STREAM_START_ACK,
                connection_id=self.connection_id,
                stream_id=None,
                success=False,
                seq=seq,
            ))

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _set_state(self, new_state: UpstreamState) -> None:
        if new_state is self._state:
            return
        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_STATE_CHANGED",
            "from": self._state.value,
            "to": new_state.value,
        })
        self._state = new_state

    def _mark_ready(self) -> None:
        if self._state is UpstreamState.READY:
            return
        self._set_state(UpstreamState.READY)
        self._attempt = reset_attempt()

        stop_timer(self._handshake_timer_id)
        self._handshake_timer_id = None

        task = self._handshake_task
        self._handshake_task = None
        if task is not None:
            _cancel_unless_current(task)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _recv_loop(self, ws: Any) -> None:
        """
        Feed inbound frames to handle_message until the socket closes.

        The loop ends normally on a clean remote close and raises on an
        abnormal one; both count as unexpected unless close() was called.
        """
        reason = "closed_by_remote"
        try:
            async for raw in ws:
                await self.handle_message(raw)
            close_code = getattr(ws, "close_code", None)
            if close_code is not None:
                reason = f"closed_by_remote: code={close_code}"
        except asyncio.CancelledError:
            return
        except Exception as e:  # pylint: disable=broad-exception-caught
            reason = f"recv_failed: {e!r}"

        if ws is self._ws and not self._closing:
            await self._on_connection_lost(reason)

    def _start_handshake_timeout(self) -> None:
        if self._handshake_timeout_s <= 0:
            return

        timeout_s = self._handshake_timeout_s

        async def _handshake_timeout_task() -> None:
            try:
                await asyncio.sleep(timeout_s)
            except asyncio.CancelledError:
                return

            self._handshake_task = None
            if self._state is UpstreamState.READY or self._closing:
                return

            log_event({
                **self.log_context(),
                "event_type": "UPSTREAM_HANDSHAKE_TIMEOUT",
                "level": "WARNING",
                "timeout_s": timeout_s,
            })
            await self._emit(UpstreamError(
                event_type=UpstreamEventType.UPSTREAM_ERROR,
                connection_id=self.connection_id,
                kind=ErrorKind.TIMEOUT,
                message=f"Upstream login not confirmed within {timeout_s:g}s",
            ))
            await self._on_connection_lost("handshake_timeout")

        self._handshake_task = asyncio.create_task(_handshake_timeout_task())

    async def _on_connection_lost(self, reason: str) -> None:
        """
        Unexpected closure: drop the socket, notify, schedule reconnect.
        """
        ws = self._ws
        self._ws = None

        recv_task = self._recv_task
        self._recv_task = None
        if recv_task is not None:
            _cancel_unless_current(recv_task)

        handshake_task = self._handshake_task
        self._handshake_task = None
        if handshake_task is not None:
            _cancel_unless_current(handshake_task)

        cancel_timer(self._handshake_timer_id)
        self._handshake_timer_id = None

        if ws is not None:
            await _close_quietly(ws)

        self._pending.clear()
        self.channel = ChannelStatus()
        self._set_state(UpstreamState.DISCONNECTED)

        delay_s = self._policy.delay_for(self._attempt)
        self._attempt = next_attempt(self._attempt)

        log_event({
            **self.log_context(),
            "event_type": "UPSTREAM_CONNECTION_LOST",
            "level": "WARNING",
            "reason": reason,
            "reconnect_in_s": delay_s,
            "attempt": self._attempt.attempt,
        })

        self._schedule_reconnect(delay_s)

        await self._emit(ConnectionLost(
            event_type=UpstreamEventType.CONNECTION_LOST,
            connection_id=self.connection_id,
            reason=reason,
            reconnect_in_s=delay_s,
        ))

    def _schedule_reconnect(self, delay_s: float) -> None:
        existing = self._reconnect_task
        if existing is not None:
            _cancel_unless_current(existing)

        async def _reconnect_task() -> None:
            try:
                await asyncio.sleep(delay_s)
            except asyncio.CancelledError:
                return

            self._reconnect_task = None
            if self._closing:
                return
            await self.connect()

        self._reconnect_task = asyncio.create_task(_reconnect_task())


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _cancel_unless_current(task: asyncio.Task[None]) -> None:
    """Cancel a task unless it is the one currently running."""
    if task is not asyncio.current_task() and not task.done():
        task.cancel()


async def _close_quietly(ws: Any) -> None:
    try:
        await ws.close()
    except Exception:  # pylint: disable=broad-exception-caught
        pass
