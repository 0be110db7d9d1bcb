"""Bounded retries with exponential backoff around a single attempt."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import AttemptFailure, BackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """`max_retries` extra attempts, delays of initial_delay_ms * 2**n."""

    max_retries: int = 0
    initial_delay_ms: int = 1000
    timeout: float | None = None

    def delay_for(self, failures: int) -> float:
        """Seconds to wait after the `failures`-th failed attempt (1-based)."""

        return self.initial_delay_ms * (2 ** (failures - 1)) / 1000.0


@dataclass(frozen=True, slots=True)
class RetryOutcome:
    attempts: int
    value: object = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


RETRYABLE_ERRORS: tuple[type[Exception], ...] = (AttemptFailure, BackendError, OSError)


async def run_with_retry(
    attempt_fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "",
) -> RetryOutcome:
    """Run `attempt_fn` until it succeeds or the policy is exhausted.

    Each attempt is bounded by `policy.timeout`. Only the last failure is kept;
    earlier ones are logged and dropped.
    """

    attempts = 0
    last_error: Exception | None = None

    while attempts <= policy.max_retries:
        attempts += 1
        try:
            if policy.timeout is None:
                value = await attempt_fn()
            else:
                value = await asyncio.wait_for(attempt_fn(), timeout=policy.timeout)
            return RetryOutcome(attempts=attempts, value=value)
        except TimeoutError:
            last_error = AttemptFailure(f"Timed out after {policy.timeout:g}s")
        except RETRYABLE_ERRORS as e:
            last_error = e

        if attempts <= policy.max_retries:
            delay = policy.delay_for(attempts)
            logger.info(
                "Attempt failed; retrying",
                extra={
                    "step": label,
                    "attempt": attempts,
                    "max_attempts": policy.max_retries + 1,
                    "delay_s": delay,
                    "error": str(last_error),
                },
            )
            await sleep(delay)

    return RetryOutcome(attempts=attempts, error=last_error)
