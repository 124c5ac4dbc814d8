import asyncio

import pytest

from olly.cancellation import run_cancellable
from olly.confirmation import PendingConfirmation, request_confirmation
from olly.llm import ToolCall
from olly.loop_detector import LoopDetector, canonical_signature
from olly.safety.audit import redact
from olly.types import ConfirmationAction, ConfirmationRequest, ConfirmationResponse, RiskLevel

REQUEST = ConfirmationRequest(id="req-1", tool="run_command", risk_level=RiskLevel.PROMPT, description="Execute: make")
ALLOW = ConfirmationResponse(action=ConfirmationAction.ALLOW)
DENY = ConfirmationResponse(action=ConfirmationAction.DENY)


@pytest.mark.asyncio
async def test_pending_confirmation_resolves_exactly_once():
    pending = PendingConfirmation(REQUEST)

    assert pending.resolve(ALLOW)
    assert not pending.resolve(DENY)
    assert not pending.cancel()
    assert await pending.wait() == ALLOW


@pytest.mark.asyncio
async def test_cancelled_confirmation_waits_to_none():
    pending = PendingConfirmation(REQUEST)

    assert pending.cancel()
    assert not pending.resolve(ALLOW)
    assert await pending.wait() is None
    assert pending.cancelled


@pytest.mark.asyncio
async def test_request_confirmation_accepts_sync_and_async_handlers():
    async def async_handler(request):
        await asyncio.sleep(0)
        return DENY

    assert await request_confirmation(REQUEST, lambda request: ALLOW, asyncio.Event()) == ALLOW
    assert await request_confirmation(REQUEST, async_handler, asyncio.Event()) == DENY


@pytest.mark.asyncio
async def test_request_confirmation_denies_on_bad_handler_result():
    response = await request_confirmation(REQUEST, lambda request: "yes", asyncio.Event())
    assert response == DENY


@pytest.mark.asyncio
async def test_request_confirmation_without_handler_denies():
    assert await request_confirmation(REQUEST, None, asyncio.Event()) == DENY


@pytest.mark.asyncio
async def test_request_confirmation_skips_handler_when_already_aborted():
    asked = []
    abort = asyncio.Event()
    abort.set()

    assert await request_confirmation(REQUEST, lambda request: asked.append(request) or ALLOW, abort) is None
    assert asked == []


@pytest.mark.asyncio
async def test_abort_cancels_outstanding_handler():
    abort = asyncio.Event()
    cancelled = []

    async def slow_handler(request):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return ALLOW

    asyncio.get_running_loop().call_later(0.05, abort.set)
    response = await asyncio.wait_for(request_confirmation(REQUEST, slow_handler, abort), timeout=5)

    assert response is None
    assert cancelled == [True]


@pytest.mark.asyncio
async def test_run_cancellable_returns_result():
    async def work():
        return 42

    assert await run_cancellable(work(), asyncio.Event()) == (42, False)


@pytest.mark.asyncio
async def test_run_cancellable_cancels_work_on_abort():
    abort = asyncio.Event()
    state = {"cancelled": False}

    async def work():
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise

    asyncio.get_running_loop().call_later(0.05, abort.set)
    assert await asyncio.wait_for(run_cancellable(work(), abort), timeout=5) == (None, True)
    assert state["cancelled"]


@pytest.mark.asyncio
async def test_run_cancellable_propagates_work_errors():
    async def work():
        raise ValueError("bad")

    with pytest.raises(ValueError, match="bad"):
        await run_cancellable(work(), asyncio.Event())


def test_loop_detector_counts_within_window():
    detector = LoopDetector(threshold=3, window=5)
    a = ToolCall(id="1", name="read_file", arguments={"path": "a"})

    counts = [detector.observe(ToolCall(id=str(i), name=name, arguments={"path": name})) for i, name in enumerate("bcde")]
    assert counts == [1, 1, 1, 1]
    assert detector.observe(a) == 1
    assert detector.observe(a) == 2
    assert not detector.is_loop(2)
    assert detector.observe(a) == 3
    assert detector.is_loop(3)

    detector.reset()
    assert detector.observe(a) == 1


def test_loop_detector_forgets_calls_outside_window():
    detector = LoopDetector(threshold=3, window=5)
    a = ToolCall(id="a", name="grep", arguments={"pattern": "x"})
    others = [ToolCall(id=str(i), name="grep", arguments={"pattern": str(i)}) for i in range(4)]

    detector.observe(a)
    detector.observe(others[0])
    detector.observe(a)
    for other in others[1:]:
        detector.observe(other)

    # window is now [others0, a, others1, others2, others3]
    assert detector.observe(a) == 2


def test_canonical_signature_ignores_key_order():
    assert canonical_signature("t", {"a": 1, "b": [1, 2]}) == canonical_signature("t", {"b": [1, 2], "a": 1})
    assert canonical_signature("t", {"a": 1}) != canonical_signature("u", {"a": 1})


def test_redact_nested_values():
    token = "ghp_" + "x" * 36
    data = {"headers": {"auth": token}, "items": ["password: 'hunter2'", 3]}

    redacted = redact(data)

    assert redacted["headers"]["auth"] == "[REDACTED]"
    assert redacted["items"][0] == "[REDACTED]"
    assert redacted["items"][1] == 3
