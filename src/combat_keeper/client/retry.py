"""
Bounded retry with exponential backoff for transient failures.

Only TransientError is retried. Validation, rule and rate-limit errors
propagate on the first attempt. When the budget is spent the last
transient error is wrapped in ActionFailedError.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..exceptions import ActionFailedError, TransientError

logger = logging.getLogger("combat-keeper.gateway")

MAX_RETRIES = 2
RETRY_BACKOFF = 2.0

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.3,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``attempt + 1``.

    Grows as ``base_delay * RETRY_BACKOFF ** attempt``, is stretched by up to
    ``jitter`` of itself, and never exceeds ``max_delay``.
    """
    rng = rng or random
    delay = base_delay * RETRY_BACKOFF ** attempt
    delay *= 1 + jitter * rng.random()
    return min(delay, max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = MAX_RETRIES,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    jitter: float = 0.3,
    on_retry: Callable[[int, TransientError, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "action",
) -> T:
    """
    Run an operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory. It is called once per
            attempt, so it must reuse the same idempotency key each time.
        max_retries: Attempts allowed after the first.
        base_delay: First backoff delay in seconds.
        max_delay: Cap on any single delay.
        jitter: Fractional random stretch applied to each delay.
        on_retry: Called with (retry_number, error, delay) before sleeping.
        sleep: Sleep coroutine, replaceable in tests.
        description: Name used in log lines and the final error.

    Returns:
        The operation's result.

    Raises:
        ActionFailedError: If every attempt failed transiently.
        CombatKeeperError: Any non-transient error, unchanged.
    """
    last_error: TransientError | None = None
    attempts = 0

    for attempt in range(max_retries + 1):
        attempts += 1
        try:
            return await operation()
        except TransientError as e:
            last_error = e
            if attempt == max_retries:
                break
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(
                f"{description} failed: {e.message}, "
                f"retry {attempt + 1}/{max_retries} in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            await sleep(delay)

    logger.error(f"{description} failed after {attempts} attempts: {last_error.message}")
    raise ActionFailedError(
        f"{description} failed after {attempts} attempts: {last_error.message}",
        attempts=attempts,
        last_error=last_error,
        details=last_error.to_dict(),
    )
