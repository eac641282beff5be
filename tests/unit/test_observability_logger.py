# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from typing import Any

import pytest

from observability import logger, metrics


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    lines: list[str] = []

    # Patch the explicit output sink used by logger
    monkeypatch.setattr(logger, "_print", lines.append)
    monkeypatch.setattr(logger, "_enabled", True)
    monkeypatch.setattr(logger, "_min_level", logger._LEVELS["INFO"])  # pylint: disable=protected-access
    return lines


def test_log_event_emits_valid_jsonl(captured: list[str]) -> None:
    """
    Contract:
    - log_event emits exactly one JSONL line
    - payload is serialized as-is, plus a ts_ms timestamp
    - output sink is patchable
    """
    payload: dict[str, Any] = {
        "event_type": "TEST",
        "connection_id": "up_1",
        "value": 123,
    }

    logger.log_event(payload)

    assert len(captured) == 1

    decoded = json.loads(captured[0])
    assert isinstance(decoded.pop("ts_ms"), int)
    assert decoded == payload


def test_caller_timestamp_is_kept(captured: list[str]) -> None:
    logger.log_event({"event_type": "TEST", "ts_ms": 5})

    assert json.loads(captured[0])["ts_ms"] == 5


def test_unserializable_event_falls_back(captured: list[str]) -> None:
    logger.log_event({"event_type": "TEST", "blob": object()})

    decoded = json.loads(captured[0])
    assert decoded["event_type"] == "LOGGER_SERIALIZATION_ERROR"


def test_level_filtering(captured: list[str]) -> None:
    logger.configure(enabled=True, level="WARNING")

    logger.log_event({"event_type": "DEBUG_NOISE", "level": "DEBUG"})
    logger.log_event({"event_type": "PLAIN"})
    logger.log_event({"event_type": "BAD", "level": "ERROR"})

    assert [json.loads(line)["event_type"] for line in captured] == ["BAD"]


def test_disabled_logger_is_silent(captured: list[str]) -> None:
    logger.configure(enabled=False)

    logger.log_event({"event_type": "TEST"})

    assert captured == []


def test_timer_emits_metric_event(captured: list[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(metrics, "_active_timers", {})

    timer_id = metrics.start_timer("upstream_handshake_ms", connection_id="up_1")
    duration = metrics.stop_timer(timer_id)

    assert duration is not None and duration >= 0
    decoded = json.loads(captured[-1])
    assert decoded["event_type"] == "METRIC_TIMER"
    assert decoded["metric"] == "upstream_handshake_ms"
    assert decoded["connection_id"] == "up_1"
    assert metrics.active_timer_count() == 0


def test_cancelled_timer_emits_nothing(captured: list[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(metrics, "_active_timers", {})

    timer_id = metrics.start_timer("stream_start_ack_ms")
    metrics.cancel_timer(timer_id)

    assert metrics.stop_timer(timer_id) is None
    assert captured == []


def test_counter_emits_current_value(captured: list[str]) -> None:
    metrics.report_count("audio_packets_sent", 50, connection_id="up_1", details={"stream_id": 42})

    decoded = json.loads(captured[0])
    assert decoded["event_type"] == "METRIC_COUNTER"
    assert decoded["value"] == 50
    assert decoded["details"] == {"stream_id": 42}
