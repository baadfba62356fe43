"""Bounded waits for remote operations."""

import asyncio
from typing import Awaitable, Optional, TypeVar

from config.errors import OperationTimeoutError

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_ms: int,
    operation: Optional[str] = None,
    message: Optional[str] = None,
) -> T:
    """Await `awaitable`, converting a hang into OperationTimeoutError.

    The wrapped operation is cancelled when the bound elapses; nothing is
    retried.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(message=message, timeout_ms=timeout_ms, operation=operation)
