"""
Route registration for the relay API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire the gateway to the downstream WebSocket lifecycle
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from observability.logger import log_event
from session.client_session import ClientSession
from session.gateway import RelayGateway


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        gateway: RelayGateway = app.state.gateway
        return {
            "status": "ok",
            "policy": gateway.policy.value,
            "clients": gateway.client_count,
            "bindings": gateway.binding_count,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        gateway: RelayGateway = app.state.gateway
        session = await gateway.on_client_connect()
        writer = asyncio.create_task(_client_writer(ws, session))

        try:
            while True:
                msg = await ws.receive()

                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(code=msg.get("code", 1000))

                if msg.get("text") is not None:
                    await gateway.on_client_text(session.session_id, msg["text"])

                elif msg.get("bytes") is not None:
                    await gateway.on_client_binary(session.session_id, msg["bytes"])

        except WebSocketDisconnect:
            await gateway.on_client_disconnect(session.session_id, reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "level": "ERROR",
                "session_id": session.session_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await gateway.on_client_disconnect(session.session_id, reason="server_error")

        finally:
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)


async def _client_writer(ws: WebSocket, session: ClientSession) -> None:
    """
    Deliver everything the gateway enqueued for one client.

    Sends JSON messages first, then binary frames. Exits when the session
    closes or the socket write fails.
    """
    try:
        while not session.closed:
            await session.wait_for_output()

            for msg in session.drain_control():
                await ws.send_text(json.dumps(msg))

            for frame in session.drain_audio():
                await ws.send_bytes(frame)

    except asyncio.CancelledError:
        return

    except Exception as exc:  # pylint: disable=broad-exception-caught
        # The reader observes the disconnect and tears the session down
        log_event({
            "event_type": "WS_WRITE_FAILED",
            "level": "WARNING",
            "session_id": session.session_id,
            "exception": type(exc).__name__,
            "message": str(exc),
        })
