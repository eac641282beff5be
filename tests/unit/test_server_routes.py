# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest
from fastapi.testclient import TestClient

from config import MultiplexPolicy
from observability import logger
from server.app import create_app

from relay_fakes import FakeDialer, make_config


@pytest.fixture(autouse=True)
def restore_logger(monkeypatch: pytest.MonkeyPatch) -> None:
    # create_app() reconfigures the process-wide logger
    monkeypatch.setattr(logger, "_enabled", logger._enabled)  # pylint: disable=protected-access
    monkeypatch.setattr(logger, "_min_level", logger._min_level)  # pylint: disable=protected-access


def make_client(**overrides) -> TestClient:
    app = create_app(make_config(enable_json_logs=False, **overrides), connect_fn=FakeDialer())
    return TestClient(app)


def test_health_reports_policy_and_bindings():
    with make_client(multiplex_policy=MultiplexPolicy.SHARED) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "policy": "shared",
        "clients": 0,
        "bindings": 0,
    }


def test_websocket_greets_and_reports_disconnected():
    with make_client() as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"type": "log", "text": "Connected to relay"}
            assert ws.receive_json() == {
                "type": "status",
                "connected": False,
                "channel": "",
                "user_count": 0,
            }


def test_websocket_rejects_bad_requests():
    with make_client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.receive_json()

            ws.send_text("{broken")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["message"].startswith("Invalid request")

            ws.send_json({"type": "begin_talk"})
            assert ws.receive_json() == {"type": "error", "message": "Not connected to upstream"}


def test_client_count_tracks_open_sockets():
    with make_client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert client.get("/health").json()["clients"] == 1
