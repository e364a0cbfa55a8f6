"""
Retry and timeout helpers for provider and storage calls.

Every attempt runs under an optional time budget; a timed-out attempt counts
as a failed, retryable attempt. Between attempts the policy waits a full-jitter
exponential backoff, i.e. uniformly in ``[0, min(max_delay, base_delay * 2**k))``
after the k-th (0-based) failure.
"""

import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx
import openai

from meetscribe.services.transcription.exceptions import (
    AttemptTimeoutError,
    AudioFormatError,
    ConfigurationError,
    PipelineCancelledError,
)
from meetscribe.utils.error_formatting import classify_error_message

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


async def with_timeout(operation: Operation, timeout: Optional[float]) -> Any:
    """Await ``operation()``, raising AttemptTimeoutError if it exceeds ``timeout`` seconds."""
    if not timeout:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout)
    except asyncio.TimeoutError:
        raise AttemptTimeoutError(f"Attempt timed out after {timeout}s", timeout_seconds=timeout) from None


def _classify_single(exc: BaseException) -> Optional[bool]:
    """Retry verdict for one exception, or None when it carries no signal."""
    if isinstance(exc, (PipelineCancelledError, asyncio.CancelledError)):
        return False
    if isinstance(exc, (AttemptTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, (AudioFormatError, ConfigurationError)):
        return False

    status_code = getattr(exc, 'status_code', None)
    if isinstance(status_code, int):
        if status_code == 429 or status_code >= 500:
            return True
        if 400 <= status_code < 500:
            return False

    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError, ConnectionError)):
        return True
    # Truncated or garbled JSON bodies from the provider are transient
    if isinstance(exc, json.JSONDecodeError):
        return True

    category = classify_error_message(str(exc))
    if category is not None:
        return category.retryable
    return None


def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether a failed attempt is worth repeating.

    Walks the ``__cause__`` chain so that provider errors
    wrapped by a connector are judged by their origin too. Anything without
    a recognised transient signal is treated as fatal.
    """
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        verdict = _classify_single(current)
        if verdict is not None:
            return verdict
        current = current.__cause__
    return False


class RetryPolicy:
    """Bounded retries with full-jitter exponential backoff."""

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 30.0,
                 attempt_timeout: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rand: Callable[[], float] = random.random):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.attempt_timeout = attempt_timeout
        self.sleep = sleep
        self.rand = rand

    @classmethod
    def from_settings(cls, settings, **kwargs) -> 'RetryPolicy':
        return cls(
            max_attempts=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            attempt_timeout=settings.attempt_timeout_seconds,
            **kwargs,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        return is_retryable(exc)

    def compute_delay(self, attempt: int) -> float:
        """Backoff before the next attempt, after 0-based ``attempt`` failed."""
        cap = min(self.max_delay, self.base_delay * (2 ** attempt))
        return self.rand() * cap

    async def call(self, operation: Operation, description: str = 'operation',
                   on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
                   cancel_token=None) -> Any:
        """
        Run ``operation`` until it succeeds, fails fatally, or attempts run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            description: Label used in log messages
            on_retry: Called with (retry_number, error, delay) before each backoff wait
            cancel_token: Optional token; cancellation interrupts the backoff wait

        Raises:
            The last error once attempts are exhausted, the first fatal error,
            or PipelineCancelledError.
        """
        for attempt in range(self.max_attempts):
            if cancel_token is not None and cancel_token.cancelled:
                raise PipelineCancelledError(f"Cancelled before {description}")
            try:
                return await with_timeout(operation, self.attempt_timeout)
            except PipelineCancelledError:
                raise
            except Exception as e:
                if not self.is_retryable(e):
                    logger.error(f"{description} failed with non-retryable error: {e}")
                    raise
                if attempt + 1 >= self.max_attempts:
                    logger.error(f"{description} failed after {self.max_attempts} attempts: {e}")
                    raise

                delay = self.compute_delay(attempt)
                logger.warning(f"{description} attempt {attempt + 1}/{self.max_attempts} failed: {e}. "
                               f"Retrying in {delay:.2f}s")
                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)

                if cancel_token is not None:
                    if await cancel_token.pause(delay, self.sleep):
                        raise PipelineCancelledError(f"Cancelled while waiting to retry {description}")
                else:
                    await self.sleep(delay)


async def with_retry(operation: Operation, max_attempts: int = 3, base_delay: float = 1.0,
                     max_delay: float = 30.0, attempt_timeout: Optional[float] = None,
                     description: str = 'operation') -> Any:
    """Convenience wrapper: build a RetryPolicy and run ``operation`` through it."""
    policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay,
                         max_delay=max_delay, attempt_timeout=attempt_timeout)
    return await policy.call(operation, description=description)
