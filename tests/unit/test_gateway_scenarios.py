# pylint: disable=missing-module-docstring,missing-function-docstring

from __future__ import annotations

import asyncio
import json
from typing import Any

import numpy as np

from config import IncomingAudioFormat, MultiplexPolicy
from protocol.framing import encode_frame
from session.client_session import ClientSession
from session.gateway import RelayGateway
from session.stream_session import StreamState

from relay_fakes import FakeCodec, FakeDialer, make_config, settle

ONLINE = {"command": "on_channel_status", "channel": "Test", "status": "online", "users_online": 2}
CONNECT = {"type": "connect", "credentials": {"token": "tok", "channel": "Test"}}
ONE_FRAME = np.zeros(960, dtype="<f4").tobytes()


def make_gateway(dialer: FakeDialer, **overrides: Any) -> RelayGateway:
    return RelayGateway(
        config=make_config(**overrides),
        connect_fn=dialer,
        codec_factory=FakeCodec,
    )


async def send(gw: RelayGateway, client: ClientSession, msg: dict[str, Any]) -> None:
    await gw.on_client_text(client.session_id, json.dumps(msg))


def of_type(messages: tuple[dict[str, Any], ...], msg_type: str) -> list[dict[str, Any]]:
    return [m for m in messages if m["type"] == msg_type]


async def connected_client(gw: RelayGateway, dialer: FakeDialer) -> ClientSession:
    client = await gw.on_client_connect()
    await send(gw, client, CONNECT)
    dialer.latest.feed_json(ONLINE)
    await settle()
    client.drain_control()
    return client


async def talking_client(gw: RelayGateway, dialer: FakeDialer) -> ClientSession:
    client = await connected_client(gw, dialer)
    await send(gw, client, {"type": "begin_talk"})
    start = dialer.latest.sent_json()[-1]
    dialer.latest.feed_json({"seq": start["seq"], "success": True, "stream_id": 42})
    await settle()
    client.drain_control()
    return client


# ---------------------------------------------------------------------
# Client lifecycle
# ---------------------------------------------------------------------

def test_new_client_gets_greeting_and_disconnected_status():
    async def scenario() -> None:
        gw = make_gateway(FakeDialer())

        client = await gw.on_client_connect()

        assert client.drain_control() == (
            {"type": "log", "text": "Connected to relay"},
            {"type": "status", "connected": False, "channel": "", "user_count": 0},
        )
        assert gw.client_count == 1

    asyncio.run(scenario())


def test_connect_opens_upstream_and_reports_ready():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await gw.on_client_connect()
        client.drain_control()

        await send(gw, client, CONNECT)
        assert dialer.latest.sent_json()[0] == {
            "command": "logon",
            "seq": 1,
            "auth_token": "tok",
            "channel": "Test",
        }

        dialer.latest.feed_json(ONLINE)
        await settle()

        messages = client.drain_control()
        assert {"type": "status", "connected": True, "channel": "Test", "user_count": 2} in messages
        assert {"type": "log", "text": "Connected: Test (2 users)"} in messages
        assert gw.binding_count == 1

    asyncio.run(scenario())


def test_connect_without_token_is_rejected():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await gw.on_client_connect()
        client.drain_control()

        await send(gw, client, {"type": "connect", "credentials": {"channel": "Test"}})

        assert of_type(client.drain_control(), "error") == [
            {"type": "error", "message": "Missing auth token"},
        ]
        assert dialer.calls == []

    asyncio.run(scenario())


def test_legacy_event_names_are_accepted():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await gw.on_client_connect()

        await send(gw, client, {"type": "zello_connect", "token": "tok", "channel": "Test"})

        assert len(dialer.sockets) == 1

    asyncio.run(scenario())


def test_invalid_json_yields_error():
    async def scenario() -> None:
        gw = make_gateway(FakeDialer())
        client = await gw.on_client_connect()
        client.drain_control()

        await gw.on_client_text(client.session_id, "{oops")

        (error,) = of_type(client.drain_control(), "error")
        assert error["message"].startswith("Invalid request")

    asyncio.run(scenario())


def test_client_disconnect_closes_its_upstream():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        await gw.on_client_disconnect(client.session_id, reason="client_disconnect")
        await gw.on_client_disconnect(client.session_id, reason="client_disconnect")

        assert gw.binding_count == 0
        assert gw.client_count == 0
        assert dialer.latest.closed
        assert client.closed

    asyncio.run(scenario())


def test_disconnect_event_releases_upstream_but_keeps_client():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        await send(gw, client, {"type": "disconnect"})

        assert gw.binding_count == 0
        assert gw.client_count == 1
        assert of_type(client.drain_control(), "status")[-1]["connected"] is False

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Talk burst
# ---------------------------------------------------------------------

def test_full_talk_burst():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)
        ws = dialer.latest

        await send(gw, client, {"type": "begin_talk"})
        start = ws.sent_json()[-1]
        assert start["command"] == "start_stream"
        assert start["seq"] == 2
        assert start["codec"] == "opus"

        ws.feed_json({"seq": 2, "success": True, "stream_id": 42})
        await settle()
        assert {"type": "log", "text": "Stream started: 42"} in client.drain_control()

        await gw.on_client_binary(client.session_id, ONE_FRAME)
        (frame,) = ws.sent_binary()
        assert frame[:9] == bytes.fromhex("010000002a00000000")
        assert frame[9:] == b"OPUS"

        await send(gw, client, {"type": "end_talk"})
        assert ws.sent_json()[-1] == {"command": "stop_stream", "seq": 3, "stream_id": 42}

        binding = gw.binding_for(client.session_id)
        assert binding is not None
        assert binding.stream.state is StreamState.IDLE
        assert binding.talker is None

    asyncio.run(scenario())


def test_begin_talk_can_address_a_single_user():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        await send(gw, client, {"type": "begin_talk", "for": "bob", "target_type": "user"})

        start = dialer.latest.sent_json()[-1]
        assert start["command"] == "start_stream"
        assert start["for"] == "bob"
        assert start["target_type"] == "user"

    asyncio.run(scenario())


def test_json_audio_chunks_are_rechunked_into_frames():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await talking_client(gw, dialer)

        for _ in range(3):
            await send(gw, client, {"type": "audio_data", "data": [0.0] * 640})

        # 1920 samples -> exactly two codec frames
        frames = dialer.latest.sent_binary()
        assert [f[5:9] for f in frames] == [b"\x00\x00\x00\x00", b"\x00\x00\x00\x01"]

    asyncio.run(scenario())


def test_begin_talk_before_ready_is_rejected():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await gw.on_client_connect()
        await send(gw, client, CONNECT)
        client.drain_control()

        await send(gw, client, {"type": "begin_talk"})

        assert of_type(client.drain_control(), "error") == [
            {"type": "error", "message": "Not connected to upstream"},
        ]
        assert [m["command"] for m in dialer.latest.sent_json()] == ["logon"]

    asyncio.run(scenario())


def test_audio_before_stream_active_is_dropped():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        await gw.on_client_binary(client.session_id, ONE_FRAME)
        await send(gw, client, {"type": "begin_talk"})
        await gw.on_client_binary(client.session_id, ONE_FRAME)

        assert dialer.latest.sent_binary() == []
        assert client.audio_chunks_dropped == 2

    asyncio.run(scenario())


def test_begin_talk_while_remote_party_speaks():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        dialer.latest.feed_json({"command": "on_stream_start", "stream_id": 9, "from": "Alice"})
        await settle()
        messages = client.drain_control()
        assert {"type": "speaker_update", "speaker": "Alice"} in messages
        assert {"type": "log", "text": "Alice is speaking"} in messages

        await send(gw, client, {"type": "begin_talk"})

        assert of_type(client.drain_control(), "error") == [
            {"type": "error", "message": "Channel busy: Alice is transmitting"},
        ]
        assert gw.binding_for(client.session_id).talker is None

    asyncio.run(scenario())


def test_stream_rejection_returns_to_idle():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        await send(gw, client, {"type": "begin_talk"})
        seq = dialer.latest.sent_json()[-1]["seq"]
        dialer.latest.feed_json({"seq": seq, "error": "channel busy"})
        await settle()

        (error,) = of_type(client.drain_control(), "error")
        assert error["message"] == "Stream rejected: channel busy"
        binding = gw.binding_for(client.session_id)
        assert binding.stream.state is StreamState.IDLE
        assert binding.talker is None

    asyncio.run(scenario())


def test_missing_ack_times_out():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer, stream_start_timeout_s=0.01)
        client = await connected_client(gw, dialer)

        await send(gw, client, {"type": "begin_talk"})
        await asyncio.sleep(0.05)

        (error,) = of_type(client.drain_control(), "error")
        assert "not acknowledged" in error["message"]
        binding = gw.binding_for(client.session_id)
        assert binding.stream.state is StreamState.IDLE
        assert binding.talker is None

        # A late ack no longer activates anything, and its stream is closed
        dialer.latest.feed_json({"seq": 2, "success": True, "stream_id": 42})
        await settle()
        assert binding.stream.state is StreamState.IDLE
        assert dialer.latest.sent_json()[-1] == {"command": "stop_stream", "seq": 3, "stream_id": 42}

    asyncio.run(scenario())


def test_quick_tap_closes_stream_acked_after_end_talk():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        await send(gw, client, {"type": "begin_talk"})
        await send(gw, client, {"type": "end_talk"})
        dialer.latest.feed_json({"seq": 2, "success": True, "stream_id": 42})
        await settle()

        commands = [m["command"] for m in dialer.latest.sent_json()]
        assert commands == ["logon", "start_stream", "stop_stream"]
        assert dialer.latest.sent_json()[-1]["stream_id"] == 42
        binding = gw.binding_for(client.session_id)
        assert binding.stream.state is StreamState.IDLE
        assert of_type(client.drain_control(), "error") == []

    asyncio.run(scenario())


def test_ack_with_unframeable_stream_id_is_a_refusal():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)

        await send(gw, client, {"type": "begin_talk"})
        dialer.latest.feed_json({"seq": 2, "success": True, "stream_id": 2**32})
        await settle()

        (error,) = of_type(client.drain_control(), "error")
        assert error["message"] == "Upstream refused the stream"
        binding = gw.binding_for(client.session_id)
        assert binding.stream.state is StreamState.IDLE

        await gw.on_client_binary(client.session_id, ONE_FRAME)
        assert dialer.latest.sent_binary() == []

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Incoming audio
# ---------------------------------------------------------------------

def test_incoming_audio_passes_through_with_header():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await connected_client(gw, dialer)
        frame = encode_frame(stream_id=9, packet_id=3, payload=b"opus-bytes")

        dialer.latest.feed(frame)
        await settle()

        assert client.drain_audio() == (frame,)

    asyncio.run(scenario())


def test_incoming_audio_can_be_decoded_to_pcm():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer, incoming_audio_format=IncomingAudioFormat.PCM)
        client = await connected_client(gw, dialer)

        dialer.latest.feed(encode_frame(stream_id=9, packet_id=0, payload=b"opus-bytes"))
        await settle()

        (pcm,) = client.drain_audio()
        assert len(pcm) == 1920

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Connection loss
# ---------------------------------------------------------------------

def test_connection_loss_resets_stream_and_reconnects():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await talking_client(gw, dialer)
        binding = gw.binding_for(client.session_id)

        dialer.latest.drop()
        await asyncio.sleep(0.05)

        messages = client.drain_control()
        assert {"type": "status", "connected": False, "channel": "", "user_count": 0} in messages
        assert {"type": "speaker_update", "speaker": None} in messages
        assert any("reconnecting in" in m.get("text", "") for m in of_type(messages, "log"))

        assert binding.stream.state is StreamState.IDLE
        assert binding.talker is None
        assert len(dialer.sockets) == 2
        assert dialer.latest.sent_json()[0]["seq"] == 1

        # Audio during the outage goes nowhere
        await gw.on_client_binary(client.session_id, ONE_FRAME)
        assert dialer.latest.sent_binary() == []

    asyncio.run(scenario())


def test_auth_failure_is_reported():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        client = await gw.on_client_connect()
        await send(gw, client, CONNECT)
        client.drain_control()

        dialer.latest.feed_json({"seq": 1, "error": "invalid token"})
        await settle()

        assert of_type(client.drain_control(), "error") == [
            {"type": "error", "message": "Authentication failed: invalid token"},
        ]

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Shared policy
# ---------------------------------------------------------------------

def test_shared_policy_multiplexes_one_upstream():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(
            dialer,
            multiplex_policy=MultiplexPolicy.SHARED,
            upstream_auth_token="server-token",
            upstream_channel="Ops",
        )
        alice = await gw.on_client_connect()
        bob = await gw.on_client_connect()

        await send(gw, alice, {"type": "connect"})
        await send(gw, bob, {"type": "connect"})
        dialer.latest.feed_json({**ONLINE, "channel": "Ops"})
        await settle()

        assert len(dialer.sockets) == 1
        assert dialer.latest.sent_json()[0]["auth_token"] == "server-token"
        for client in (alice, bob):
            assert of_type(client.drain_control(), "status")[-1]["connected"] is True

        await send(gw, alice, {"type": "begin_talk"})
        await send(gw, bob, {"type": "begin_talk"})
        assert of_type(bob.drain_control(), "error") == [
            {"type": "error", "message": "Another client is transmitting"},
        ]

        await gw.on_client_disconnect(alice.session_id)
        assert gw.binding_count == 1
        assert gw.binding_for(bob.session_id).talker is None

        await gw.on_client_disconnect(bob.session_id)
        assert gw.binding_count == 0
        assert dialer.latest.closed

    asyncio.run(scenario())


def test_shared_policy_without_any_credentials():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer, multiplex_policy=MultiplexPolicy.SHARED)
        client = await gw.on_client_connect()
        client.drain_control()

        await send(gw, client, {"type": "connect"})

        assert of_type(client.drain_control(), "error") == [
            {"type": "error", "message": "No upstream credentials configured"},
        ]
        assert dialer.calls == []

    asyncio.run(scenario())


def test_shutdown_closes_everything():
    async def scenario() -> None:
        dialer = FakeDialer()
        gw = make_gateway(dialer)
        await connected_client(gw, dialer)
        await connected_client(gw, dialer)

        await gw.shutdown()

        assert gw.binding_count == 0
        assert all(ws.closed for ws in dialer.sockets)

    asyncio.run(scenario())
