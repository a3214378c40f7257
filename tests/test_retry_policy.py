from datetime import UTC, datetime, timedelta

import pytest

from orchestrator.config.settings import Settings
from orchestrator.v1.infra.jobs.retry import (
    DEFAULT_RETRY_DELAYS_MINUTES,
    RetryPolicy,
    get_retry_policy,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def test_default_ladder():
    policy = RetryPolicy()
    assert DEFAULT_RETRY_DELAYS_MINUTES == (1, 5, 15)
    assert policy.delay_for(1) == timedelta(minutes=1)
    assert policy.delay_for(2) == timedelta(minutes=5)
    assert policy.delay_for(3) == timedelta(minutes=15)
    assert policy.delay_for(4) == timedelta(minutes=15)


def test_attempts_past_ladder_reuse_last_delay():
    policy = RetryPolicy([2, 4])
    assert policy.delay_for(3) == timedelta(minutes=4)
    assert policy.delay_for(10) == timedelta(minutes=4)


def test_delay_for_rejects_non_positive_attempt():
    with pytest.raises(ValueError, match="attempt must be >= 1"):
        RetryPolicy().delay_for(0)


def test_empty_ladder_rejected():
    with pytest.raises(ValueError, match="at least one delay"):
        RetryPolicy([])


def test_failure_with_attempts_left_schedules_retry():
    decision = RetryPolicy().evaluate_failure(attempts=1, max_attempts=3, now=NOW)

    assert decision.retry is True
    assert decision.delay == timedelta(minutes=1)
    assert decision.next_retry_at == NOW + timedelta(minutes=1)


def test_second_failure_uses_second_rung():
    decision = RetryPolicy().evaluate_failure(attempts=2, max_attempts=3, now=NOW)
    assert decision.next_retry_at == NOW + timedelta(minutes=5)


def test_failure_at_max_attempts_is_terminal():
    decision = RetryPolicy().evaluate_failure(attempts=3, max_attempts=3, now=NOW)

    assert decision.retry is False
    assert decision.next_retry_at is None
    assert decision.delay is None


def test_policy_built_from_settings():
    settings = Settings(_env_file=None, job_retry_delays_minutes=[3, 30])
    policy = get_retry_policy(settings)
    assert policy.ladder == (timedelta(minutes=3), timedelta(minutes=30))
