import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying transient failures with a linear back-off.

    Anything other than :class:`TransientInfrastructureError` propagates on
    the first attempt.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientInfrastructureError as exc:
            if attempt == attempts:
                logger.error("Giving up after %s attempts: %s", attempts, exc)
                raise
            logger.warning("Attempt %s/%s failed: %s", attempt, attempts, exc)
            await sleep(delay * attempt)
    raise ValueError("attempts must be at least 1")
