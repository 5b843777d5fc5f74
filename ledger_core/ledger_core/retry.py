"""Exponential backoff with jitter for event-store scans.

Only :class:`~ledger_core.errors.ScanError` subclasses are retried by
default; anything else (cancellation, programming errors, conflicts)
propagates on the first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from ledger_core.config import LedgerSettings
from ledger_core.errors import ScanError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for scan retries."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after the first attempt before the error is re-raised.",
    )
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound on a single delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )

    @classmethod
    def from_settings(cls, settings: LedgerSettings) -> RetryConfig:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_backoff_base,
            max_delay=settings.retry_max_delay,
        )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for zero-based *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (ScanError,),
    *,
    description: str = "operation",
) -> T:
    """Await ``fn()`` with retry and exponential backoff.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory.  It is invoked from scratch on
        every attempt, so a partially consumed scan is restarted.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Only exceptions whose type appears in this tuple trigger a retry.
    description:
        Label used in retry log lines.

    Returns
    -------
    T
        The result of the first successful attempt.

    Raises
    ------
    Exception
        The last retryable exception once ``max_retries`` is exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d for %s after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                description,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    logger.error("Giving up on %s after %d attempts: %s", description, config.max_retries + 1, last_exception)
    raise last_exception
