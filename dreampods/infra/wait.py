"""Deadline-bounded polling."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable


async def wait_for_ready[T](
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    terminal_check: Callable[[T], bool] | None = None,
    timeout: float = 300.0,
    interval: float = 5.0,
    description: str = "resource",
) -> T:
    """Wait until poll_fn returns something that passes ready_check.

    Args:
        poll_fn: Async function that polls for the resource state.
        ready_check: Function that returns True when resource is ready.
        terminal_check: Optional function that returns True if the resource
            reached a terminal failure state.
        timeout: Hard deadline in seconds, measured on the event loop clock.
        interval: Time between polls in seconds.
        description: Description for error messages.

    Returns:
        The ready resource.

    Raises:
        TimeoutError: If the deadline passes first.
        RuntimeError: If the resource reaches a terminal state.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        result = await poll_fn()

        if result is not None:
            if ready_check(result):
                return result

            if terminal_check is not None and terminal_check(result):
                raise RuntimeError(f"{description} reached terminal state: {result}")

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise TimeoutError(
                f"Timeout waiting for {description} after {timeout:.1f}s"
            )

        await asyncio.sleep(min(interval, remaining))
