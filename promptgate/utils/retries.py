import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def async_retry(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float,
    exceptions: Iterable[Type[BaseException]],
    max_delay: float = 30.0,
    label: Optional[str] = None,
) -> T:
    """
    Await ``func`` and retry it on transient errors with capped exponential
    backoff.

    ``retries`` does not count the first attempt. Only ``exceptions`` are
    retried; the last one is re-raised once attempts run out.
    """
    exc_types = tuple(exceptions)
    delay = base_delay
    for attempt in range(retries + 1):
        try:
            return await func()
        except exc_types as e:
            if attempt >= retries:
                raise
            logger.info(
                "Retrying %s after %s (attempt %d of %d)",
                label or getattr(func, "__name__", "call"), e, attempt + 1, retries,
            )
            await asyncio.sleep(min(delay, max_delay))
            delay *= 2
