"""
Exponential backoff retry policy.

delay(attempt) = base_delay * 2 ** attempt, for a capped number of attempts.
Shared by every transport that reconnects or retries.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from voiceclone.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Capped exponential backoff.

    Usage:
        policy = BackoffPolicy(max_attempts=5, base_delay=1.0)
        result = await retry_async(fetch, policy, retry_on=(httpx.TransportError,))
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after `attempt` (0-based) failed."""
        return attempt + 1 < self.max_attempts


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation`, retrying matching failures with backoff. The last error is re-raised."""
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if not policy.should_retry(attempt):
                logger.error(
                    f"Giving up after {attempt + 1} attempts",
                    extra={"attempts": attempt + 1, "error": str(exc)},
                )
                raise

            delay = policy.delay(attempt)
            logger.warning(
                f"Attempt {attempt + 1} failed, retrying in {delay}s",
                extra={"attempt": attempt + 1, "delay_seconds": delay, "error": str(exc)},
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)
            attempt += 1
