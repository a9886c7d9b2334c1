"""
Bounded retry with exponential backoff and full jitter.

Only errors flagged ``retryable`` (CarrierTransientError) are retried. Every
other ShippingError propagates on the first attempt. Callers are responsible
for only wrapping operations that are safe to repeat.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from shipping_gateway.core.exceptions import ShippingError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.5           # Base delay in seconds
    max_delay: float = 4.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier


def compute_backoff(
    config: RetryConfig,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    Full jitter: uniform in [0, min(max_delay, base * exp_base ** attempt)].
    """
    ceiling = min(config.max_delay, config.base_delay * (config.exponential_base ** attempt))
    return ceiling * rand()


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, ShippingError], None]] = None,
) -> T:
    """
    Run ``operation`` up to ``config.max_attempts`` times.

    Raises the last retryable error once attempts are exhausted.
    """
    attempts = max(1, config.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except ShippingError as e:
            if not e.retryable or attempt == attempts - 1:
                raise
            delay = compute_backoff(config, attempt)
            logger.warning(
                f"[RETRY] {label}: {e.code} on attempt {attempt + 1}/{attempts}, "
                f"retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt + 1, e)
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
