"""Retry decorator with exponential backoff for idempotent API reads.

Control calls (start/stop/create/delete) are never wrapped: their failures
carry meaning for the reconciler and must surface unchanged.

Example:
    @retry(on=on_status_code(429, 503), max_attempts=3)
    async def list_pods(self) -> list[PodResponse]:
        ...
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable

from loguru import logger

type RetryPredicate = Callable[[Exception], bool]


def retry[**P, T](
    on: type[Exception] | tuple[type[Exception], ...] | RetryPredicate = Exception,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry an async function while ``on`` matches the raised exception.

    Args:
        on: Exception class, tuple of classes, or predicate deciding whether
            a failure is worth another attempt.
        max_attempts: Total attempts, including the first one.
        base_delay: Delay before the first retry, in seconds.
        exponential_base: Backoff multiplier per attempt.
        max_delay: Upper bound for a single delay.
        jitter: Add up to 10% random jitter to each delay.
    """
    if isinstance(on, type) and issubclass(on, Exception):
        should_retry: RetryPredicate = lambda e: isinstance(e, on)
    elif isinstance(on, tuple):
        should_retry = lambda e: isinstance(e, on)
    else:
        should_retry = on

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not should_retry(e) or attempt >= max_attempts - 1:
                        raise

                    delay = min(base_delay * (exponential_base**attempt), max_delay)
                    if jitter:
                        delay += random.uniform(0, delay * 0.1)

                    logger.warning(
                        "Retry {n}/{total} of {fn} after {err}. Waiting {delay:.1f}s...",
                        n=attempt + 1, total=max_attempts, fn=func.__name__,
                        err=type(e).__name__, delay=delay,
                    )
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator


def on_status_code(*codes: int) -> RetryPredicate:
    """Retry when the exception's ``status`` attribute is one of ``codes``."""

    def predicate(e: Exception) -> bool:
        return getattr(e, "status", None) in codes

    return predicate
