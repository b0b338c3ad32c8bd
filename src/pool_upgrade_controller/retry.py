"""Bounded constant-interval retry with jitter for node RPCs."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from pool_upgrade_controller.errors import RetryTimeoutError

log = structlog.get_logger()

T = TypeVar("T")


async def retry_constant(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    unit: float,
    jitter: float,
    description: str = "operation",
) -> T:
    """Call ``operation`` until it succeeds or ``timeout`` seconds have elapsed.

    Every failure waits ``unit`` seconds plus a random jitter of up to ``jitter``
    seconds before the next attempt. Any ``Exception`` counts as a retryable
    failure; cancellation propagates immediately.

    Raises:
        RetryTimeoutError: When the budget is exhausted. The last failure is chained
            as ``__cause__``.
    """
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                msg = f"{description} did not succeed within {timeout:g}s after {attempt} attempt(s): {exc}"
                raise RetryTimeoutError(msg) from exc
            log.debug("retrying", operation=description, attempt=attempt, error=str(exc))
            delay = unit + random.uniform(0, jitter)
            # Never sleep past the deadline.
            await asyncio.sleep(min(delay, remaining))
