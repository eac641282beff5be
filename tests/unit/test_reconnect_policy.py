# pylint: disable=missing-module-docstring,missing-function-docstring

from config import ReconnectStrategy
from upstream.reconnect import (
    ExponentialBackoffPolicy,
    FixedDelayPolicy,
    ReconnectAttempt,
    build_reconnect_policy,
    next_attempt,
    reset_attempt,
)

from relay_fakes import make_config


def test_attempt_counter_is_immutable_and_increments():
    first = reset_attempt()
    second = next_attempt(first)

    assert first.attempt == 0
    assert second.attempt == 1


def test_fixed_delay_ignores_attempt():
    policy = FixedDelayPolicy(delay_s=5.0)

    assert policy.delay_for(ReconnectAttempt(0)) == 5.0
    assert policy.delay_for(ReconnectAttempt(10)) == 5.0


def test_exponential_backoff_doubles_then_caps():
    policy = ExponentialBackoffPolicy(base_delay_s=1.0, max_delay_s=10.0)

    delays = [policy.delay_for(ReconnectAttempt(n)) for n in range(6)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_exponential_backoff_survives_huge_attempt_counts():
    policy = ExponentialBackoffPolicy(base_delay_s=1.0, max_delay_s=60.0)

    assert policy.delay_for(ReconnectAttempt(10_000)) == 60.0


def test_build_policy_defaults_to_fixed():
    policy = build_reconnect_policy(make_config(reconnect_delay_s=5.0))

    assert policy == FixedDelayPolicy(delay_s=5.0)


def test_build_policy_exponential_never_caps_below_base():
    config = make_config(
        reconnect_strategy=ReconnectStrategy.EXPONENTIAL,
        reconnect_delay_s=5.0,
        reconnect_max_delay_s=1.0,
    )

    policy = build_reconnect_policy(config)

    assert policy == ExponentialBackoffPolicy(base_delay_s=5.0, max_delay_s=5.0)
