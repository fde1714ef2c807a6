"""
winfleet/utils/async_retry.py

Provides a decorator to retry an async function upon failure, sleeping
according to a BackoffPolicy between attempts.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

from winfleet.utils.backoff import BackoffPolicy

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    policy: Optional[BackoffPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. After the
    n-th failure it sleeps `policy.delay(n)` seconds. Only exceptions matching
    `retry_on` are retried; anything else propagates immediately.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        policy (BackoffPolicy, optional):
            Delay policy between attempts. Defaults to a 1s fixed delay.
        retry_on (tuple of exception types, optional):
            Exceptions that trigger a retry. Defaults to (Exception,).
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.

    Returns:
        A decorator that wraps an async function with retry behavior.
    """
    backoff = policy or BackoffPolicy(initial=1.0, multiplier=1.0, maximum=1.0)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt_number = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if attempt_number >= retries:
                        if noisy:
                            logger.error(
                                "All %d attempts failed for %r",
                                retries,
                                func.__qualname__,
                            )
                        raise
                    await asyncio.sleep(backoff.delay(attempt_number))
                    attempt_number += 1

        return wrapper

    return decorator
