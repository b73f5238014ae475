from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from newsletter_tracker.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures worth another attempt: the request may not have reached the directory.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (TimeoutError, OSError, httpx.TransportError)


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    # Domain errors raised for upstream 5xx carry the status as an attribute.
    status_code = getattr(exc, "status_code", None)
    return isinstance(status_code, int) and status_code >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    @property
    def attempts(self) -> int:
        return max(self.max_attempts, 1)

    def delay_s(self, attempt: int) -> float:
        # Exponential in the attempt number, jittered so concurrent signups spread out.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
    name: str = "external_call",
) -> T:
    """Await ``func`` under a per-attempt timeout, retrying transient failures.

    The last failure is re-raised unchanged once attempts run out or a
    failure is not retryable.
    """
    policy = policy or RetryPolicy.from_settings()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt == policy.attempts or not retryable(exc):
                raise
            delay = policy.delay_s(attempt)
            logger.warning(
                "external_call_retry name=%s attempt=%s of=%s sleep_s=%.3f error=%s",
                name,
                attempt,
                policy.attempts,
                delay,
                type(exc).__name__,
            )
            await asyncio.sleep(delay)
