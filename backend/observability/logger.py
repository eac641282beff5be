"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- No side effects beyond logging

Events may carry an optional "level" field (DEBUG/INFO/WARNING/ERROR).
Events without one are treated as INFO.
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable


_LEVELS: dict[str, int] = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
}


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

_enabled: bool = True
_min_level: int = _LEVELS["INFO"]


def configure(*, enabled: bool = True, level: str = "INFO") -> None:
    """
    Apply process-wide logging settings (called once at startup).

    Unknown level names fall back to INFO.
    """
    global _enabled, _min_level  # pylint: disable=global-statement
    _enabled = enabled
    _min_level = _LEVELS.get(level.upper(), _LEVELS["INFO"])


def now_ms() -> int:
    """Wall-clock milliseconds for event timestamps."""
    return time.time_ns() // 1_000_000


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies event_type and identifying fields (connection_id,
    session_id, ...). A ts_ms field is added when missing.

    Never raises.
    """
    if not _enabled:
        return

    level = event.get("level", "INFO")
    if _LEVELS.get(str(level).upper(), _LEVELS["INFO"]) < _min_level:
        return

    record: dict[str, Any] = dict(event)
    record.setdefault("ts_ms", now_ms())

    try:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback, logging must never crash the relay
        fallback: dict[str, Any] = {
            "ts_ms": record.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
