from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from chainmind.adapters.retry import (
    BackoffPolicy,
    RetryDecision,
    async_retry,
    compute_delay,
    parse_retry_after_seconds,
    transient_classifier,
)


class TransientError(RuntimeError):
    pass


def test_retry_after_header_wins_over_exponential_backoff() -> None:
    delay = compute_delay(
        attempt=3,
        base_delay_seconds=0.5,
        max_delay_seconds=10,
        retry_after_header="2.5",
        jitter_seed=11,
    )
    assert delay == 2.5


def test_retry_after_is_capped_by_max_delay() -> None:
    delay = compute_delay(
        attempt=1,
        base_delay_seconds=0.5,
        max_delay_seconds=4,
        retry_after_header="120",
        jitter_seed=11,
    )
    assert delay == 4


def test_retry_after_http_date_supported() -> None:
    at = datetime.now(UTC) + timedelta(seconds=3)
    parsed = parse_retry_after_seconds(at.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert parsed is not None
    assert 0 <= parsed <= 3.5


@pytest.mark.parametrize("raw", [None, "", "   ", "-3", "soon"])
def test_retry_after_rejects_unusable_values(raw) -> None:
    assert parse_retry_after_seconds(raw) is None


def test_backoff_uses_attempt_progression() -> None:
    d1 = compute_delay(
        attempt=1,
        base_delay_seconds=0.2,
        max_delay_seconds=10,
        retry_after_header=None,
        jitter_seed=1,
    )
    d3 = compute_delay(
        attempt=3,
        base_delay_seconds=0.2,
        max_delay_seconds=10,
        retry_after_header=None,
        jitter_seed=1,
    )
    assert d3 > d1


def test_async_retry_retries_transient_errors_until_success() -> None:
    calls = {"n": 0}
    sleeps: list[float] = []

    async def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientError("try again")
        return "ok"

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    classify = transient_classifier(
        BackoffPolicy(base_delay_seconds=0.1, max_delay_seconds=1.0),
        is_retryable=lambda exc: isinstance(exc, TransientError),
    )

    result = asyncio.run(async_retry(flaky, max_attempts=3, classify=classify, sleep=fake_sleep))

    assert result == "ok"
    assert calls["n"] == 3
    assert len(sleeps) == 2


def test_async_retry_does_not_retry_permanent_errors() -> None:
    calls = {"n": 0}
    retried: list[int] = []

    async def broken() -> None:
        calls["n"] += 1
        raise ValueError("bad request")

    async def fake_sleep(seconds: float) -> None:
        raise AssertionError("must not sleep")

    classify = transient_classifier(
        BackoffPolicy(),
        is_retryable=lambda exc: isinstance(exc, TransientError),
        on_retry=lambda exc, attempt: retried.append(attempt),
    )

    with pytest.raises(ValueError):
        asyncio.run(async_retry(broken, max_attempts=5, classify=classify, sleep=fake_sleep))
    assert calls["n"] == 1
    assert retried == []


def test_async_retry_reraises_after_last_attempt() -> None:
    calls = {"n": 0}

    async def always_down() -> None:
        calls["n"] += 1
        raise TransientError("still down")

    async def fake_sleep(seconds: float) -> None:
        return None

    with pytest.raises(TransientError):
        asyncio.run(
            async_retry(
                always_down,
                max_attempts=2,
                classify=lambda exc, attempt: RetryDecision(retry=True, delay_seconds=0),
                sleep=fake_sleep,
            )
        )
    assert calls["n"] == 2


def test_async_retry_requires_positive_attempts() -> None:
    async def noop() -> None:
        return None

    with pytest.raises(ValueError):
        asyncio.run(
            async_retry(
                noop,
                max_attempts=0,
                classify=lambda exc, attempt: RetryDecision(retry=False, delay_seconds=0),
            )
        )
