"""
Reconnect policy helpers.

Purpose:
- Centralize the delay rules applied after an unexpected upstream close
- Keep UpstreamConnection free of delay arithmetic

Reconnect is unconditional and unbounded: the policy only decides *when*,
never *whether*.

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass

from config import AppConfig, ReconnectStrategy


# =============================================================================
# Attempt counter
# =============================================================================

@dataclass(frozen=True)
class ReconnectAttempt:
    """
    Immutable reconnect attempt counter.

    Semantics:
    - attempt == 0 is the first reconnect after a READY connection dropped.
    - attempt >= 1 counts consecutive failed reconnects.
    - Reset to 0 whenever the connection reaches READY.
    """
    attempt: int


def next_attempt(current: ReconnectAttempt) -> ReconnectAttempt:
    """Return a new ReconnectAttempt with attempt incremented by 1."""
    return ReconnectAttempt(attempt=current.attempt + 1)


def reset_attempt() -> ReconnectAttempt:
    """Returns a fresh attempt counter."""
    return ReconnectAttempt(attempt=0)


# =============================================================================
# Policies
# =============================================================================

@dataclass(frozen=True)
class FixedDelayPolicy:
    """Same delay before every reconnect (reference behavior: 5 s)."""
    delay_s: float

    def delay_for(self, attempt: ReconnectAttempt) -> float:  # pylint: disable=unused-argument
        return self.delay_s


@dataclass(frozen=True)
class ExponentialBackoffPolicy:
    """
    Doubling delay, capped at max_delay_s.

    attempt 0 -> base_delay_s, attempt 1 -> 2 * base_delay_s, ...
    """
    base_delay_s: float
    max_delay_s: float

    def delay_for(self, attempt: ReconnectAttempt) -> float:
        # Clamp the exponent so huge attempt counts cannot overflow
        exponent = min(attempt.attempt, 32)
        return min(self.base_delay_s * (2 ** exponent), self.max_delay_s)


ReconnectPolicy = FixedDelayPolicy | ExponentialBackoffPolicy


def build_reconnect_policy(config: AppConfig) -> ReconnectPolicy:
    """Select the reconnect policy configured for this process."""
    if config.reconnect_strategy is ReconnectStrategy.EXPONENTIAL:
        return ExponentialBackoffPolicy(
            base_delay_s=config.reconnect_delay_s,
            max_delay_s=max(config.reconnect_max_delay_s, config.reconnect_delay_s),
        )
    return FixedDelayPolicy(delay_s=config.reconnect_delay_s)
