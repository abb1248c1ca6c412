import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from app.domain.exceptions import TransientIOError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int = 3
    backoff_seconds: float = 0.1
    backoff_multiplier: float = 2.0


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    what: str,
) -> T:
    """Run operation, retrying TransientIOError with exponential backoff.

    Only transient collaborator failures are retried; anything else
    propagates on the first attempt. The last TransientIOError propagates
    once attempts are exhausted.
    """

    attempts = max(policy.attempts, 1)
    delay = policy.backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientIOError as exc:
            if attempt == attempts:
                logger.error("transient_io_exhausted", operation=what, attempts=attempts, error=str(exc))
                raise
            logger.warning("transient_io_retry", operation=what, attempt=attempt, delay=delay, error=str(exc))
            await asyncio.sleep(delay)
            delay *= policy.backoff_multiplier
    raise AssertionError("unreachable")
