"""Single-resolution confirmation channel between the safety gate and the UI.

A ``PendingConfirmation`` wraps one future. Whoever resolves it first wins:
the user's answer, a failing handler (treated as deny) or the abort signal
(treated as cancellation). Later resolutions are ignored.
"""

import asyncio
import inspect
from typing import Awaitable, Callable

from olly.cancellation import cancel_task
from olly.logging import get_logger
from olly.types import ConfirmationAction, ConfirmationRequest, ConfirmationResponse

log = get_logger(__name__)

ConfirmationHandler = Callable[
    [ConfirmationRequest],
    ConfirmationResponse | Awaitable[ConfirmationResponse],
]


class PendingConfirmation:
    """An outstanding confirmation that resolves exactly once."""

    def __init__(self, request: ConfirmationRequest):
        self.request = request
        self._future: asyncio.Future[ConfirmationResponse] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def cancelled(self) -> bool:
        return self._future.cancelled()

    def resolve(self, response: ConfirmationResponse) -> bool:
        """Deliver the user's answer. Returns False if already settled."""
        if self._future.done():
            log.debug("Ignoring late confirmation response", request_id=self.request.id)
            return False
        self._future.set_result(response)
        return True

    def cancel(self) -> bool:
        """Settle as cancelled. Returns False if already settled."""
        if self._future.done():
            return False
        self._future.cancel()
        log.info("Confirmation cancelled", request_id=self.request.id, tool=self.request.tool)
        return True

    async def wait(self) -> ConfirmationResponse | None:
        """Wait for settlement; ``None`` means the confirmation was cancelled."""
        try:
            return await asyncio.shield(self._future)
        except asyncio.CancelledError:
            if self._future.cancelled():
                return None
            raise


async def _invoke_handler(
    handler: ConfirmationHandler,
    request: ConfirmationRequest,
) -> ConfirmationResponse:
    result = handler(request)
    if inspect.isawaitable(result):
        result = await result
    if not isinstance(result, ConfirmationResponse):
        raise TypeError(f"Confirmation handler returned {type(result).__name__}")
    return result


async def request_confirmation(
    request: ConfirmationRequest,
    handler: ConfirmationHandler | None,
    abort_event: asyncio.Event,
) -> ConfirmationResponse | None:
    """Ask the handler and race the answer against ``abort_event``.

    Returns the response, a deny when there is no handler or it fails, or
    ``None`` when the abort signal fired first.
    """
    if handler is None:
        log.warning("Confirmation required but no handler configured", tool=request.tool)
        return ConfirmationResponse(action=ConfirmationAction.DENY)
    if abort_event.is_set():
        return None

    pending = PendingConfirmation(request)

    def _on_handler_done(task: asyncio.Task[ConfirmationResponse]) -> None:
        if task.cancelled():
            pending.cancel()
            return
        error = task.exception()
        if error is not None:
            log.error("Confirmation handler failed", tool=request.tool, error=str(error))
            pending.resolve(ConfirmationResponse(action=ConfirmationAction.DENY))
            return
        pending.resolve(task.result())

    handler_task = asyncio.create_task(_invoke_handler(handler, request))
    handler_task.add_done_callback(_on_handler_done)
    abort_task = asyncio.create_task(abort_event.wait())
    abort_task.add_done_callback(lambda task: None if task.cancelled() else pending.cancel())
    try:
        return await pending.wait()
    finally:
        await cancel_task(abort_task)
        await cancel_task(handler_task)
