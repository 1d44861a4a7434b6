"""Retry with exponential backoff, driven by the error taxonomy."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from core.sandbox_errors import ErrorCategory, classify
from utils.constants import (
    BASE_RETRY_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    RATE_LIMIT_RETRY_DELAY_SECONDS,
    RETRY_JITTER_SECONDS,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, category: ErrorCategory, base_delay: float = BASE_RETRY_DELAY_SECONDS,
                  rate_limit_delay: float = RATE_LIMIT_RETRY_DELAY_SECONDS,
                  jitter: float = RETRY_JITTER_SECONDS) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    base = rate_limit_delay if category == ErrorCategory.RATE_LIMIT else base_delay
    return base * (2 ** attempt) + random.uniform(0, jitter)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = BASE_RETRY_DELAY_SECONDS,
    rate_limit_delay: float = RATE_LIMIT_RETRY_DELAY_SECONDS,
    jitter: float = RETRY_JITTER_SECONDS,
    retry_all: bool = False,
    label: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run ``operation`` until it succeeds or its failure is not retryable.

    Transient failures back off from ``base_delay``; rate limits back off from
    ``rate_limit_delay``. Everything else is raised on the first failure unless
    ``retry_all`` is set (used while a sandbox is still booting).
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            category = classify(e)
            retryable = retry_all or category in (ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMIT)
            if not retryable or attempt >= max_retries:
                if retryable:
                    logger.error(f"{label} failed after {attempt + 1} attempts: {e}")
                raise
            delay = backoff_delay(attempt, category, base_delay, rate_limit_delay, jitter)
            logger.warning(
                f"{label} failed ({category.value}), retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )
            attempt += 1
            await sleep(delay)
