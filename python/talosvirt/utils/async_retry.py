"""
talosvirt/utils/async_retry.py

Bounded retries for async callables. Only polling steps use this (a node API
that is not up yet, a VM still booting, a flaky chart download); commands that
change cluster state run exactly once.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

AsyncFn = Callable[P, Coroutine[Any, Any, R]]

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[[AsyncFn], AsyncFn]:
    """
    Args:
        retries: Total number of attempts (at least one is always made).
        delay: Seconds to sleep between two attempts.
        noisy: Log every failed attempt as a warning.
        retry_on: Exceptions that earn another attempt; others propagate at once.

    Returns:
        A decorator. The last exception is re-raised when attempts run out.
    """
    attempts = max(retries, 1)

    def decorator(func: AsyncFn) -> AsyncFn:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt_number = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt_number == attempts:
                        if noisy:
                            logger.error(
                                "%r gave up after %d attempts", func.__qualname__, attempts
                            )
                        raise
                    if noisy:
                        logger.warning(
                            "%r attempt %d/%d failed: %s",
                            func.__qualname__,
                            attempt_number,
                            attempts,
                            exc,
                        )
                    await asyncio.sleep(delay)
                    attempt_number += 1

        return wrapper

    return decorator
