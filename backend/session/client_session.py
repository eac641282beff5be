"""
Downstream client session container.

- One ClientSession per connected browser socket
- Owned and mutated by RelayGateway
- NOT a state machine
- Buffers outbound messages until the route's writer drains them
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------
# ClientSession
# ---------------------------------------------------------------------


@dataclass
class ClientSession:
    """Mutable runtime container for a single downstream client."""

    # ------------------------------------------------------------------
    # Identity / lifecycle
    # ------------------------------------------------------------------

    session_id: str
    created_at: float = field(default_factory=time.time)

    # ------------------------------------------------------------------
    # Gateway-controlled binding
    # ------------------------------------------------------------------

    binding_key: str | None = None
    closed: bool = False

    # ------------------------------------------------------------------
    # Counters (observability only)
    # ------------------------------------------------------------------

    audio_chunks_dropped: int = 0

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def __post_init__(self) -> None:
        self._control_out: deque[dict[str, Any]] = deque()
        self._audio_out: deque[bytes] = deque()
        self._output_ready = asyncio.Event()

    # ------------------------------------------------------------------
    # Observability helpers (read-only)
    # ------------------------------------------------------------------

    def log_context(self) -> dict[str, Any]:
        """Standard logging context for this client."""
        return {
            "session_id": self.session_id,
            "binding_key": self.binding_key,
        }

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def enqueue_control(self, msg: dict[str, Any]) -> None:
        """
        Enqueue a control message for delivery to the client.

        Messages are buffered in FIFO order and later retrieved via
        drain_control(). Ignored once the session is closed.
        """
        if self.closed:
            return
        self._control_out.append(msg)
        self._output_ready.set()

    def enqueue_audio(self, frame: bytes) -> None:
        """Enqueue one binary audio frame for delivery to the client."""
        if self.closed:
            return
        self._audio_out.append(frame)
        self._output_ready.set()

    def drain_control(self) -> tuple[dict[str, Any], ...]:
        """
        Atomically drain all pending control messages.

        Returns:
            A FIFO-ordered tuple of control messages, or an empty tuple.
        """
        if not self._control_out:
            return ()
        out = tuple(self._control_out)
        self._control_out.clear()
        return out

    def drain_audio(self) -> tuple[bytes, ...]:
        """Atomically drain all pending binary audio frames."""
        if not self._audio_out:
            return ()
        out = tuple(self._audio_out)
        self._audio_out.clear()
        return out

    async def wait_for_output(self) -> None:
        """Block until something is enqueued (or the session closes)."""
        await self._output_ready.wait()
        self._output_ready.clear()

    def close(self) -> None:
        """Mark closed and wake any writer waiting on output."""
        self.closed = True
        self._output_ready.set()
