"""Retry executor for model provider calls.

Uses tenacity with exponential backoff plus jitter, retrying only on
rate-limit / quota errors (HTTP 429, RESOURCE_EXHAUSTED, "quota"). Any other
error propagates on the first attempt.
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_JITTER_MS = 1000

_RATE_LIMIT_PATTERN = re.compile(
    r"\b429\b|resource[_ ]exhausted|quota|rate[_ -]?limit|too many requests",
    re.IGNORECASE,
)


class ExhaustedRetriesError(Exception):
    """Every attempt failed with a rate-limit error."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Rate limited after {attempts} attempt(s): {last_error}")


def is_rate_limit_error(exc: BaseException) -> bool:
    """Return True if the error carries a rate-limit or quota signal."""
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True

    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if value == 429 or value == "429":
            return True
        if isinstance(value, str) and _RATE_LIMIT_PATTERN.search(value):
            return True

    return bool(_RATE_LIMIT_PATTERN.search(str(exc)))


class RetryExecutor:
    """Runs an async operation with bounded exponential backoff on rate limits."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        max_jitter_ms: int = MAX_JITTER_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._policy = policy or RetryPolicy()
        self._max_jitter_ms = max_jitter_ms
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> T:
        """Await ``operation()``, retrying rate-limit failures per the policy.

        Raises ExhaustedRetriesError once ``max_attempts`` retries have failed.
        Non-retryable errors are re-raised unchanged after one attempt.
        """
        policy = policy or self._policy
        total_attempts = policy.max_attempts + 1

        retrying = AsyncRetrying(
            retry=retry_if_exception(is_rate_limit_error),
            stop=stop_after_attempt(total_attempts),
            wait=wait_exponential(multiplier=policy.initial_delay_ms / 1000, exp_base=2)
            + wait_random(0, self._max_jitter_ms / 1000),
            sleep=self._sleep,
            before_sleep=lambda state: self._log_retry(state, total_attempts),
        )

        async def _attempt() -> T:
            return await operation()

        try:
            return await retrying(_attempt)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error("Rate limit retries exhausted after %d attempts", e.last_attempt.attempt_number)
            raise ExhaustedRetriesError(e.last_attempt.attempt_number, last_error) from last_error

    @staticmethod
    def _log_retry(state: RetryCallState, total_attempts: int) -> None:
        delay_ms = state.next_action.sleep * 1000  # type: ignore[union-attr]
        logger.warning(
            "Provider rate limit hit, retrying attempt %d/%d in %.0fms",
            state.attempt_number,
            total_attempts - 1,
            delay_ms,
        )
