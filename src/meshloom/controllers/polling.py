"""Bounded polling for external readiness signals."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from meshloom.core.errors import ReadinessTimeoutError

T = TypeVar("T")


async def poll_until(
    condition: Callable[[], Awaitable[T]],
    interval: float,
    timeout: float,
    description: str,
) -> T:
    """
    Evaluate ``condition`` every ``interval`` seconds until it returns a truthy value.

    Returns:
        The first truthy value returned by the condition.

    Raises:
        ReadinessTimeoutError: The condition stayed falsy for ``timeout`` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await condition()
        if result:
            return result
        if loop.time() >= deadline:
            raise ReadinessTimeoutError(f"timeout waiting for {description}")
        await asyncio.sleep(interval)
