"""Cooperative cancellation helpers built on ``asyncio.Event``."""

import asyncio
from typing import Any, Awaitable, TypeVar

from olly.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Cancelled task raised", error=str(e))


async def run_cancellable(work: Awaitable[T], abort_event: asyncio.Event) -> tuple[T | None, bool]:
    """Run work until it finishes or ``abort_event`` is set.

    Returns ``(result, cancelled)``. When the event wins, the work task is
    cancelled (which closes any in-flight stream) and ``(None, True)`` is
    returned. Exceptions raised by the work propagate unchanged.
    """
    if abort_event.is_set():
        if asyncio.iscoroutine(work):
            work.close()
        return None, True

    work_task = asyncio.ensure_future(work)
    abort_task = asyncio.create_task(abort_event.wait())
    try:
        done, _ = await asyncio.wait(
            {work_task, abort_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work_task in done:
            return work_task.result(), False

        await cancel_task(work_task)
        return None, True
    except asyncio.CancelledError:
        await cancel_task(work_task)
        raise
    finally:
        await cancel_task(abort_task)
