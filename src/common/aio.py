"""Asyncio helpers."""

import asyncio
from typing import Any, Awaitable, Iterable, List


async def gather_all(aws: Iterable[Awaitable[Any]]) -> List[Any]:
    """Await all awaitables and return their results in input order.

    Unlike a plain ``gather`` the error raised is the first one in input
    order rather than the first one to happen, so a failing pass reports the
    same error regardless of network timing. Once a child fails, every child
    after it in input order is cancelled since none of them can change the
    outcome; children before it still run to completion. Cancelling the
    caller cancels every child.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    position = {task: index for index, task in enumerate(tasks)}
    failed_at = len(tasks)
    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    failed_at = min(failed_at, position[task])
            for task in tasks[failed_at + 1:]:
                task.cancel()
    finally:
        for task in pending:
            task.cancel()

    if failed_at < len(tasks):
        raise tasks[failed_at].exception()
    return [task.result() for task in tasks]
