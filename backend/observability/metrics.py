"""
Relay metrics, emitted as JSONL events through observability.logger.

Two kinds of metric:

    METRIC_TIMER    one duration spanning two handlers, e.g. logon sent ->
                    channel online, or start_stream sent -> ack received
    METRIC_COUNTER  a running count reported at intervals, e.g. audio
                    packets written on a stream

One metric = one log event. Nothing is aggregated in process.

Timers are started and stopped by id from different callbacks, so a caller
that abandons a measurement (socket dropped, stream stopped) must call
cancel_timer() or the entry stays in the registry.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any

from observability.logger import log_event


@dataclass(frozen=True)
class _PendingTimer:
    metric: str
    started_ns: int
    connection_id: str | None


# timer_id -> pending timer
_active_timers: dict[str, _PendingTimer] = {}


def start_timer(name: str, *, connection_id: str | None = None) -> str:
    """
    Start a monotonic timer attributed to an upstream connection.

    Returns:
        Opaque timer id for stop_timer() / cancel_timer().
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _active_timers[timer_id] = _PendingTimer(
        metric=name,
        started_ns=time.monotonic_ns(),
        connection_id=connection_id,
    )
    return timer_id


def stop_timer(
    timer_id: str | None,
    *,
    details: dict[str, Any] | None = None,
) -> int | None:
    """
    Stop a timer and emit METRIC_TIMER.

    Returns:
        duration_ms, or None for an unknown (already stopped or cancelled)
        or None timer id.
    """
    if timer_id is None:
        return None

    timer = _active_timers.pop(timer_id, None)
    if timer is None:
        return None

    duration_ms = (time.monotonic_ns() - timer.started_ns) // 1_000_000

    log_event({
        "event_type": "METRIC_TIMER",
        "metric": timer.metric,
        "value_ms": duration_ms,
        "connection_id": timer.connection_id,
        "details": details or {},
    })

    return duration_ms


def cancel_timer(timer_id: str | None) -> None:
    """Discard a timer without emitting anything. Idempotent."""
    if timer_id is not None:
        _active_timers.pop(timer_id, None)


def active_timer_count() -> int:
    """Timers started but neither stopped nor cancelled."""
    return len(_active_timers)


def report_count(
    name: str,
    value: int,
    *,
    connection_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit METRIC_COUNTER with the current value of a running count."""
    log_event({
        "event_type": "METRIC_COUNTER",
        "metric": name,
        "value": value,
        "connection_id": connection_id,
        "details": details or {},
    })
