"""
Caller-driven cancellation for long-running operations.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from webextract.utils.errors import OperationCancelledError

T = TypeVar("T")


async def run_cancellable(
    awaitable: Awaitable[T],
    cancel: Optional[asyncio.Event],
    operation: str,
) -> T:
    """
    Await ``awaitable`` unless ``cancel`` is set first.

    When the event fires, the in-flight work is cancelled and awaited so it
    cannot write anything afterwards.

    Raises:
        OperationCancelledError: If the event was set before completion
    """
    if cancel is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    if cancel.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelledError(operation)

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # Also reached when the caller's own task is cancelled.
        for pending in (task, waiter):
            if not pending.done():
                pending.cancel()

    if task in done:
        await asyncio.gather(waiter, return_exceptions=True)
        return task.result()

    await asyncio.gather(task, return_exceptions=True)
    raise OperationCancelledError(operation)
