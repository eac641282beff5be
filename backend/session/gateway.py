"""
Relay gateway.

Responsibilities:
- Owns ClientSession lifecycle (one per downstream socket)
- Owns UpstreamBinding lifecycle (connection + stream + audio pipeline)
- Maps downstream intents (connect, begin_talk, audio_chunk, end_talk,
  disconnect) onto the binding of the sending client
- Fans upstream events (status, speaker, stream ack, audio, errors,
  connection loss) out to every client subscribed to the binding
- Applies the multiplexing policy chosen at startup:
    PER_CLIENT: binding key == client session id, client credentials
    SHARED:     one binding for everyone, server credentials, ref counted

NOT responsible for:
- Socket I/O with downstream clients (routes drain ClientSession outboxes)
- Upstream wire details (UpstreamConnection)
- Stream state rules (StreamSession)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable
from uuid import uuid4

from audio.codec import AudioCodec, OpusCodec
from audio.pipeline import AudioPipeline, CodecError, InvalidFrameSize
from config import AppConfig, IncomingAudioFormat, MultiplexPolicy, UpstreamCredentials
from observability.logger import log_event
from protocol.downstream import (
    ClientEvent,
    ClientIntent,
    DownstreamProtocolError,
    error_message,
    log_message,
    parse_client_binary,
    parse_client_text,
    speaker_message,
    status_message,
)
from protocol.framing import encode_frame
from session.client_session import ClientSession
from session.connection_status import UpstreamState
from session.errors import ErrorKind, RelayError
from session.stream_session import StreamSession, StreamState
from upstream.connection import ConnectFn, UpstreamConnection
from upstream.events import (
    ConnectionLost,
    IncomingAudio,
    SpeakerChanged,
    StatusChanged,
    StreamStartAck,
    UpstreamError,
    UpstreamEvent,
)
from upstream.reconnect import build_reconnect_policy

SHARED_BINDING_KEY = "shared"

CodecFactory = Callable[[], AudioCodec]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


def _new_connection_id() -> str:
    return f"up_{uuid4().hex[:12]}"


_STATE_LOG_TEXT: dict[UpstreamState, str] = {
    UpstreamState.CONNECTING: "Connecting to upstream...",
    UpstreamState.AWAITING_AUTH: "WebSocket opened, authenticating...",
    UpstreamState.DISCONNECTED: "Disconnected from upstream",
}


# ------------------------------------------------------------------
# UpstreamBinding
# ------------------------------------------------------------------

@dataclass
class UpstreamBinding:
    """
    One upstream connection and everything hanging off it.

    subscribers:
        Session ids of downstream clients receiving this binding's events.
        The binding lives exactly as long as this set is non-empty.

    talker:
        Session id of the client holding the outbound stream, if any.
    """
    key: str
    connection: UpstreamConnection
    stream: StreamSession
    pipeline: AudioPipeline
    subscribers: set[str] = field(default_factory=set)
    talker: str | None = None
    ack_task: asyncio.Task[None] | None = None


# ------------------------------------------------------------------
# RelayGateway
# ------------------------------------------------------------------

class RelayGateway:
    """
    Process-wide gateway. One instance per server process.

    All state changes happen on the event loop inside the handler that
    receives the event; bindings share no mutable state.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        connect_fn: ConnectFn | None = None,
        codec_factory: CodecFactory | None = None,
    ) -> None:
        self._config = config
        self._connect_fn = connect_fn
        self._codec_factory: CodecFactory = codec_factory or OpusCodec
        self._reconnect_policy = build_reconnect_policy(config)

        self._clients: dict[str, ClientSession] = {}
        self._bindings: dict[str, UpstreamBinding] = {}

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def policy(self) -> MultiplexPolicy:
        return self._config.multiplex_policy

    @property
    def binding_count(self) -> int:
        return len(self._bindings)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def binding_for(self, session_id: str) -> UpstreamBinding | None:
        session = self._clients.get(session_id)
        if session is None or session.binding_key is None:
            return None
        return self._bindings.get(session.binding_key)

    def describe(self) -> dict[str, Any]:
        return {
            "policy": self.policy.value,
            "clients": self.client_count,
            "bindings": self.binding_count,
        }

    # ------------------------------------------------------------------
    # Downstream lifecycle
    # ------------------------------------------------------------------

    async def on_client_connect(self) -> ClientSession:
        """Called when a downstream socket is accepted."""
        session = ClientSession(session_id=_new_session_id())
        self._clients[session.session_id] = session

        log_event({
            **session.log_context(),
            "event_type": "CLIENT_CONNECTED",
            "policy": self.policy.value,
        })

        session.enqueue_control(log_message("Connected to relay"))

        shared = self._bindings.get(SHARED_BINDING_KEY)
        if self.policy is MultiplexPolicy.SHARED and shared is not None:
            session.enqueue_control(self._status_snapshot(shared))
        else:
            session.enqueue_control(self._status_snapshot(None))

        return session

    async def on_client_disconnect(self, session_id: str, reason: str | None = None) -> None:
        """Called when the downstream socket closes. Idempotent."""
        session = self._clients.pop(session_id, None)
        if session is None:
            log_event({
                "event_type": "CLIENT_DISCONNECT_WITHOUT_SESSION",
                "session_id": session_id,
                "reason": reason,
            })
            return

        await self._release(session)
        session.close()

        log_event({
            **session.log_context(),
            "event_type": "CLIENT_DISCONNECTED",
            "reason": reason,
            "audio_chunks_dropped": session.audio_chunks_dropped,
        })

    async def on_client_text(self, session_id: str, payload: str) -> None:
        """Route one inbound JSON text frame."""
        session = self._clients.get(session_id)
        if session is None:
            log_event({
                "event_type": "MESSAGE_WITHOUT_SESSION",
                "session_id": session_id,
            })
            return

        try:
            event = parse_client_text(payload)
        except DownstreamProtocolError as e:
            log_event({
                **session.log_context(),
                "event_type": "CLIENT_PROTOCOL_ERROR",
                "level": "WARNING",
                "error": str(e),
            })
            session.enqueue_control(error_message(f"Invalid request: {e}"))
            return

        await self.handle_client_event(session_id, event)

    async def on_client_binary(self, session_id: str, payload: bytes) -> None:
        """Route one inbound binary frame (an audio chunk)."""
        if session_id not in self._clients:
            return
        await self.handle_client_event(session_id, parse_client_binary(payload))

    async def handle_client_event(self, session_id: str, event: ClientEvent) -> None:
        session = self._clients.get(session_id)
        if session is None:
            return

        if event.intent is ClientIntent.CONNECT:
            await self._handle_connect(session, event.credentials)
        elif event.intent is ClientIntent.BEGIN_TALK:
            await self._handle_begin_talk(session, event)
        elif event.intent is ClientIntent.AUDIO_CHUNK:
            await self._handle_audio_chunk(session, event.samples)
        elif event.intent is ClientIntent.END_TALK:
            await self._handle_end_talk(session)
        elif event.intent is ClientIntent.DISCONNECT:
            await self._release(session)
            session.enqueue_control(status_message(connected=False, channel="", user_count=0))
            session.enqueue_control(log_message("Disconnected from upstream"))

    async def shutdown(self) -> None:
        """Close every binding (process shutdown)."""
        for binding in list(self._bindings.values()):
            await self._close_binding(binding)
        for session in self._clients.values():
            session.close()
        self._clients.clear()

    # ------------------------------------------------------------------
    # Intent handlers
    # ------------------------------------------------------------------

    async def _handle_connect(
        self,
        session: ClientSession,
        credentials: UpstreamCredentials | None,
    ) -> None:
        log_event({
            **session.log_context(),
            "event_type": "CLIENT_CONNECT_REQUEST",
            "credentials": credentials.describe() if credentials else None,
        })

        if self.policy is MultiplexPolicy.SHARED:
            await self._subscribe_shared(session, credentials)
            return

        if credentials is None:
            self._reject(session, ErrorKind.INVALID_REQUEST, "Missing auth token")
            return

        # A new connect replaces the client's previous upstream connection
        if session.binding_key is not None:
            await self._release(session)

        binding = self._create_binding(session.session_id, credentials, session)
        if binding is None:
            return

        self._subscribe(binding, session)
        await binding.connection.connect()

    async def _subscribe_shared(
        self,
        session: ClientSession,
        credentials: UpstreamCredentials | None,
    ) -> None:
        binding = self._bindings.get(SHARED_BINDING_KEY)

        if binding is not None:
            if session.session_id not in binding.subscribers:
                self._subscribe(binding, session)
            session.enqueue_control(self._status_snapshot(binding))
            if binding.connection.channel.speaker is not None:
                session.enqueue_control(speaker_message(binding.connection.channel.speaker))
            return

        shared_credentials = self._config.configured_credentials() or credentials
        if shared_credentials is None:
            self._reject(session, ErrorKind.INVALID_REQUEST, "No upstream credentials configured")
            return

        binding = self._create_binding(SHARED_BINDING_KEY, shared_credentials, session)
        if binding is None:
            return

        self._subscribe(binding, session)
        await binding.connection.connect()

    async def _handle_begin_talk(self, session: ClientSession, event: ClientEvent) -> None:
        binding = self._binding_of(session)
        if binding is None or not binding.connection.is_ready:
            self._reject(session, ErrorKind.NOT_READY, "Not connected to upstream")
            return

        if binding.talker is not None:
            if binding.talker == session.session_id:
                log_event({
                    **session.log_context(),
                    "event_type": "BEGIN_TALK_ALREADY_TALKING",
                    "level": "DEBUG",
                })
                return
            self._reject(session, ErrorKind.UPSTREAM_BUSY, "Another client is transmitting")
            return

        # Claim the talker slot before awaiting the upstream send
        binding.talker = session.session_id
        try:
            await binding.stream.start(target=event.target, target_type=event.target_type)
        except RelayError as e:
            binding.talker = None
            self._reject(session, e.kind, e.message)
            return

        session.enqueue_control(log_message("Transmitting..."))
        self._start_ack_timeout(binding)

    async def _handle_audio_chunk(self, session: ClientSession, samples: Any) -> None:
        binding = self._binding_of(session)
        if (
            binding is None
            or binding.talker != session.session_id
            or not binding.stream.is_active
        ):
            # No buffering before the stream is confirmed
            session.audio_chunks_dropped += 1
            return

        try:
            frames = binding.pipeline.pcm_frames(samples)
        except (TypeError, ValueError) as e:
            self._reject(session, ErrorKind.INVALID_REQUEST, f"Invalid audio chunk: {e}")
            return

        for frame in frames:
            try:
                sent = await binding.stream.push_audio(frame)
            except InvalidFrameSize as e:
                log_event({
                    **session.log_context(),
                    "event_type": "AUDIO_FRAME_SIZE_ERROR",
                    "level": "ERROR",
                    "error": str(e),
                })
                return
            if not sent:
                return

    async def _handle_end_talk(self, session: ClientSession) -> None:
        binding = self._binding_of(session)
        if binding is None or binding.talker != session.session_id:
            return
        await self._end_talk(binding)
        session.enqueue_control(log_message("Transmission ended"))

    # ------------------------------------------------------------------
    # Binding management
    # ------------------------------------------------------------------

    def _create_binding(
        self,
        key: str,
        credentials: UpstreamCredentials,
        requester: ClientSession,
    ) -> UpstreamBinding | None:
        try:
            codec = self._codec_factory()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                **requester.log_context(),
                "event_type": "CODEC_INIT_FAILED",
                "level": "ERROR",
                "error": repr(e),
            })
            requester.enqueue_control(error_message("Audio codec unavailable"))
            return None

        connection = UpstreamConnection(
            connection_id=_new_connection_id(),
            url=self._config.upstream_url,
            credentials=credentials,
            emit_event=partial(self._on_upstream_event, key),
            reconnect_policy=self._reconnect_policy,
            handshake_timeout_s=self._config.handshake_timeout_s,
            connect_fn=self._connect_fn,
        )
        pipeline = AudioPipeline(codec)
        binding = UpstreamBinding(
            key=key,
            connection=connection,
            stream=StreamSession(connection=connection, pipeline=pipeline),
            pipeline=pipeline,
        )
        self._bindings[key] = binding

        log_event({
            "event_type": "BINDING_CREATED",
            "binding_key": key,
            "connection_id": connection.connection_id,
        })
        return binding

    def _subscribe(self, binding: UpstreamBinding, session: ClientSession) -> None:
        binding.subscribers.add(session.session_id)
        session.binding_key = binding.key

    async def _release(self, session: ClientSession) -> None:
        """Detach a client from its binding; the last one out closes it."""
        key = session.binding_key
        session.binding_key = None
        if key is None:
            return

        binding = self._bindings.get(key)
        if binding is None:
            return

        if binding.talker == session.session_id:
            await self._end_talk(binding)

        binding.subscribers.discard(session.session_id)
        if not binding.subscribers:
            await self._close_binding(binding)

    async def _close_binding(self, binding: UpstreamBinding) -> None:
        if self._bindings.get(binding.key) is binding:
            del self._bindings[binding.key]

        self._cancel_ack_timeout(binding)
        binding.talker = None
        binding.stream.force_idle("binding_closed", socket_lost=True)
        await binding.connection.close()

        log_event({
            "event_type": "BINDING_CLOSED",
            "binding_key": binding.key,
            "connection_id": binding.connection.connection_id,
        })

    async def _end_talk(self, binding: UpstreamBinding) -> None:
        self._cancel_ack_timeout(binding)
        binding.talker = None
        await binding.stream.stop()

    def _binding_of(self, session: ClientSession) -> UpstreamBinding | None:
        if session.binding_key is None:
            return None
        return self._bindings.get(session.binding_key)

    # ------------------------------------------------------------------
    # Upstream event fan-out
    # ------------------------------------------------------------------

    async def _on_upstream_event(self, key: str, event: UpstreamEvent) -> None:
        binding = self._bindings.get(key)
        if binding is None or binding.connection.connection_id != event.connection_id:
            log_event({
                "event_type": "UPSTREAM_EVENT_WITHOUT_BINDING",
                "level": "DEBUG",
                "binding_key": key,
                "upstream_event": event.event_type.value,
            })
            return

        if isinstance(event, IncomingAudio):
            self._relay_incoming_audio(binding, event)
        elif isinstance(event, StatusChanged):
            self._broadcast(binding, status_message(
                connected=event.connected,
                channel=event.channel,
                user_count=event.users_online,
            ))
            self._broadcast(binding, log_message(self._status_text(event)))
        elif isinstance(event, SpeakerChanged):
            self._broadcast(binding, speaker_message(event.speaker))
            if event.speaker is not None:
                self._broadcast(binding, log_message(f"{event.speaker} is speaking"))
        elif isinstance(event, StreamStartAck):
            await self._apply_stream_ack(binding, event)
        elif isinstance(event, UpstreamError):
            self._apply_upstream_error(binding, event)
        elif isinstance(event, ConnectionLost):
            self._apply_connection_lost(binding, event)

    def _relay_incoming_audio(self, binding: UpstreamBinding, event: IncomingAudio) -> None:
        if self._config.incoming_audio_format is IncomingAudioFormat.PCM:
            try:
                frame = binding.pipeline.decode_packet(event.payload)
            except CodecError as e:
                log_event({
                    "event_type": "AUDIO_DECODE_FAILED",
                    "level": "WARNING",
                    "connection_id": event.connection_id,
                    "stream_id": event.stream_id,
                    "error": str(e),
                })
                return
        else:
            # Codec payload passes through untouched with its provenance header
            frame = encode_frame(
                stream_id=event.stream_id,
                packet_id=event.packet_id,
                payload=event.payload,
            )

        for session_id in binding.subscribers:
            session = self._clients.get(session_id)
            if session is not None:
                session.enqueue_audio(frame)

    async def _apply_stream_ack(self, binding: UpstreamBinding, event: StreamStartAck) -> None:
        if await binding.stream.stop_abandoned(event):
            return

        was_starting = binding.stream.state is StreamState.STARTING
        activated = binding.stream.on_start_ack(event)
        talker = self._clients.get(binding.talker) if binding.talker else None

        if activated:
            self._cancel_ack_timeout(binding)
            if talker is not None:
                talker.enqueue_control(log_message(f"Stream started: {event.stream_id}"))
            return

        if was_starting and binding.stream.state is StreamState.IDLE:
            self._cancel_ack_timeout(binding)
            binding.talker = None
            if talker is not None:
                talker.enqueue_control(error_message("Upstream refused the stream"))

    def _apply_upstream_error(self, binding: UpstreamBinding, event: UpstreamError) -> None:
        if event.kind is ErrorKind.STREAM_REJECTED:
            talker = self._clients.get(binding.talker) if binding.talker else None
            self._cancel_ack_timeout(binding)
            binding.stream.force_idle("start_rejected")
            binding.talker = None
            if talker is not None:
                talker.enqueue_control(error_message(f"Stream rejected: {event.message}"))
            return

        if event.kind is ErrorKind.AUTH:
            text = f"Authentication failed: {event.message}"
        else:
            text = event.message

        self._broadcast(binding, error_message(text))
        self._broadcast(binding, log_message(f"Error: {text}"))

    def _apply_connection_lost(self, binding: UpstreamBinding, event: ConnectionLost) -> None:
        self._cancel_ack_timeout(binding)
        binding.stream.force_idle("connection_lost", socket_lost=True)
        binding.talker = None

        self._broadcast(binding, status_message(connected=False, channel="", user_count=0))
        self._broadcast(binding, speaker_message(None))
        self._broadcast(binding, log_message(
            f"Disconnected from upstream, reconnecting in {event.reconnect_in_s:g}s"
        ))

    # ------------------------------------------------------------------
    # Stream-start acknowledgment timeout
    # ------------------------------------------------------------------

    def _start_ack_timeout(self, binding: UpstreamBinding) -> None:
        """
        Force the stream back to IDLE if no ack arrives in time.

        Idempotent: replaces any existing timer for the binding.
        """
        self._cancel_ack_timeout(binding)

        timeout_s = self._config.stream_start_timeout_s
        if timeout_s <= 0 or binding.stream.state is not StreamState.STARTING:
            return

        async def _ack_timeout_task() -> None:
            try:
                await asyncio.sleep(timeout_s)
            except asyncio.CancelledError:
                return

            binding.ack_task = None
            if binding.stream.state is not StreamState.STARTING:
                return

            log_event({
                **binding.stream.log_context(),
                "event_type": "STREAM_START_TIMEOUT",
                "level": "WARNING",
                "timeout_s": timeout_s,
            })
            talker = self._clients.get(binding.talker) if binding.talker else None
            binding.stream.force_idle("ack_timeout")
            binding.talker = None
            if talker is not None:
                talker.enqueue_control(error_message(
                    f"Stream start not acknowledged within {timeout_s:g}s"
                ))

        binding.ack_task = asyncio.create_task(_ack_timeout_task())

    def _cancel_ack_timeout(self, binding: UpstreamBinding) -> None:
        task = binding.ack_task
        binding.ack_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Outbound helpers
    # ------------------------------------------------------------------

    def _broadcast(self, binding: UpstreamBinding, msg: dict[str, Any]) -> None:
        for session_id in binding.subscribers:
            session = self._clients.get(session_id)
            if session is not None:
                session.enqueue_control(msg)

    def _reject(self, session: ClientSession, kind: ErrorKind, message: str) -> None:
        log_event({
            **session.log_context(),
            "event_type": "CLIENT_REQUEST_REJECTED",
            "kind": kind.value,
            "message": message,
        })
        session.enqueue_control(error_message(message))

    def _status_snapshot(self, binding: UpstreamBinding | None) -> dict[str, Any]:
        if binding is None:
            return status_message(connected=False, channel="", user_count=0)
        return status_message(
            connected=binding.connection.is_ready,
            channel=binding.connection.channel.name,
            user_count=binding.connection.channel.users_online,
        )

    @staticmethod
    def _status_text(event: StatusChanged) -> str:
        if event.state is UpstreamState.READY:
            return f"Connected: {event.channel} ({event.users_online} users)"
        return _STATE_LOG_TEXT.get(event.state, event.state.value)
