from __future__ import annotations

import asyncio

import httpx
import pytest

from newsletter_tracker.services.resilience import RetryPolicy, retry_async


@pytest.mark.asyncio
async def test_retry_async_retries_directory_timeouts() -> None:
    attempts: list[int] = []

    async def lookup() -> dict:
        attempts.append(len(attempts) + 1)
        if len(attempts) == 1:
            raise TimeoutError("directory timeout")
        return {"customers": []}

    policy = RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1)
    assert await retry_async(lookup, policy=policy, name="directory.test") == {"customers": []}
    assert attempts == [1, 2]


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await retry_async(rejected, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts() -> None:
    calls = {"count": 0}

    async def down() -> None:
        calls["count"] += 1
        raise httpx.ConnectError("refused")

    with pytest.raises(httpx.ConnectError):
        await retry_async(down, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_times_out_slow_calls() -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(TimeoutError):
        await retry_async(slow, policy=RetryPolicy(timeout_ms=10, max_attempts=1, backoff_ms=1))
