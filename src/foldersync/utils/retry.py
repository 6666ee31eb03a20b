"""Bounded retry with backoff, shared by the remote client and the sync engine."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .logging import get_logger


T = TypeVar("T")

logger = get_logger("utils.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap and backoff curve for a retried operation.

    ``delay_for(attempt)`` is the pause after a failed ``attempt`` (1-based):
    ``base_delay * backoff_factor ** (attempt - 1)``, capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    backoff_factor: float = 1.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (self.backoff_factor ** max(attempt - 1, 0))
        return min(delay, self.max_delay)


# Remote transport retries: 3 attempts, 2 seconds apart
TRANSPORT_RETRY = RetryPolicy(max_attempts=3, base_delay=2.0)

# Folder-membership writes racing folder creation: 3 attempts, short growing pause
MEMBERSHIP_RETRY = RetryPolicy(max_attempts=3, base_delay=0.5, backoff_factor=2.0)


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy = TRANSPORT_RETRY,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or the policy is exhausted.

    The attempt number (1-based) is passed in so callers can escalate
    timeouts. An exception carrying a ``retry_after`` attribute overrides the
    policy delay for that attempt. Exceptions outside ``retry_on`` propagate
    immediately; the last retried exception is re-raised when attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await operation(attempt)
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "Retries exhausted",
                    operation=description,
                    attempts=attempt,
                    error=str(e)
                )
                raise

            delay = getattr(e, "retry_after", None)
            if delay is None:
                delay = policy.delay_for(attempt)

            logger.info(
                "Retrying after failure",
                operation=description,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(e)
            )
            if on_retry:
                on_retry(attempt, e)

            if delay > 0:
                await sleep(delay)
            attempt += 1
