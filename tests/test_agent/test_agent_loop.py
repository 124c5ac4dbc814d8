import asyncio
from pathlib import Path

import pytest

from olly.agent import (
    EMPTY_RESPONSE_NUDGE,
    TOOL_RESULT_HEADER,
    AgentCallbacks,
    AgentLoop,
    LoopInvocation,
    describe_error,
)
from olly.config import AgentConfig, SafetyConfig, get_config
from olly.exceptions import LLMAPIError
from olly.llm import LLMProvider, LLMResponse, Message, ToolCall
from olly.safety.gate import SafetyGate
from olly.tools.registry import Tool, ToolResult, create_default_registry
from olly.types import (
    AgentAborted,
    AgentResult,
    ConfirmationAction,
    ConfirmationResponse,
    LoopDetected,
    MaxIterationsReached,
    Mode,
    ModelFailure,
    RiskLevel,
    ToolContractViolation,
    ToolOverride,
    ToolPolicyMemory,
)


class ScriptedModel(LLMProvider):
    """Returns queued responses in order, then ``default`` forever."""

    def __init__(self, responses=(), default=None):
        self.responses = list(responses)
        self.default = default or LLMResponse(content="done")
        self.calls: list[list] = []

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None):
        return LLMResponse(content="summary")

    async def stream_chat(self, messages, tools=None, on_token=None, temperature=None, max_tokens=None):
        self.calls.append(list(messages))
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if on_token is not None and item.content:
            on_token(item.content)
        return item

    def count_tokens(self, text):
        return len(text) // 4


class HangingModel(ScriptedModel):
    def __init__(self):
        super().__init__()
        self.cancelled = False

    async def stream_chat(self, messages, tools=None, on_token=None, temperature=None, max_tokens=None):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return LLMResponse(content="too late")


def calls(*specs: tuple[str, dict]) -> LLMResponse:
    return LLMResponse(
        content="",
        tool_calls=[ToolCall(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(specs)],
    )


def build_loop(tmp_path: Path, model: LLMProvider, agent: AgentConfig | None = None, safety: SafetyConfig | None = None):
    registry = create_default_registry(tmp_path)
    gate = SafetyGate(config=safety or get_config().safety, project_root=tmp_path)
    return AgentLoop(model=model, executor=registry, gate=gate, config=agent or AgentConfig()), registry


@pytest.mark.asyncio
async def test_list_dir_then_answer_produces_one_step(tmp_path: Path):
    (tmp_path / "a.txt").write_text("hello", encoding="utf-8")
    (tmp_path / "sub").mkdir()
    model = ScriptedModel([calls(("list_dir", {"path": "."})), LLMResponse(content="Two entries.")])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(LoopInvocation(user_message="what is here?"))

    assert isinstance(result, AgentResult)
    assert result.final_answer == "Two entries."
    assert len(result.steps) == 1
    assert len(result.steps[0].observations) == 1
    assert "a.txt" in result.steps[0].observations[0].output
    assert "sub/" in result.steps[0].observations[0].output
    assert [m.role for m in result.messages] == ["user", "assistant", "tool", "assistant"]
    assert result.messages[2].content.startswith(TOOL_RESULT_HEADER)
    assert result.messages[2].tool_call_id == "call_0"
    assert result.stats.iterations == 2
    assert result.stats.tool_calls == 1
    # second model call sees the observation
    assert model.calls[1][-1].role == "tool"


@pytest.mark.asyncio
async def test_dangerous_command_denied_by_user_is_fed_back(tmp_path: Path):
    (tmp_path / "build").mkdir()
    requests = []
    blocked = []

    def confirm(request):
        requests.append(request)
        return ConfirmationResponse(action=ConfirmationAction.DENY)

    model = ScriptedModel([calls(("run_command", {"command": "rm -rf build"})), LLMResponse(content="ok, not deleting")])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(
        LoopInvocation(user_message="clean up"),
        AgentCallbacks(on_confirmation_needed=confirm, on_tool_blocked=lambda tool, reason: blocked.append((tool, reason))),
    )

    assert isinstance(result, AgentResult)
    assert requests[0].risk_level is RiskLevel.DANGEROUS
    assert requests[0].description == "Execute: rm -rf build"
    assert (tmp_path / "build").exists()
    assert result.steps[0].observations == ()
    assert blocked == [("run_command", "user")]
    tool_message = result.messages[2]
    assert tool_message.content == "Error: User denied execution. The run_command operation did NOT execute."


@pytest.mark.asyncio
async def test_max_iterations_stops_at_cap(tmp_path: Path):
    model = ScriptedModel(default=calls(("list_dir", {"path": "."})))
    loop, _ = build_loop(tmp_path, model, agent=AgentConfig(max_iterations=3, loop_detection=False))

    result = await loop.run(LoopInvocation(user_message="loop forever"))

    assert isinstance(result, MaxIterationsReached)
    assert result.iterations == 3
    assert len(model.calls) == 3
    assert "3 iterations" in describe_error(result)


@pytest.mark.asyncio
async def test_repeated_identical_call_is_detected_regardless_of_key_order(tmp_path: Path):
    (tmp_path / "a.txt").write_text("one\ntwo\n", encoding="utf-8")
    model = ScriptedModel([
        calls(("read_file", {"path": "a.txt", "limit": 1})),
        calls(("read_file", {"limit": 1, "path": "a.txt"})),
        calls(("read_file", {"path": "a.txt", "limit": 1})),
    ])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(LoopInvocation(user_message="read it"))

    assert isinstance(result, LoopDetected)
    assert result.attempts == 3
    assert result.action.name == "read_file"
    assert result.kind == "loop_detected"


@pytest.mark.asyncio
async def test_cancel_while_confirmation_pending_aborts_without_executing(tmp_path: Path):
    abort = asyncio.Event()
    handler_cancelled = []

    async def confirm(request):
        abort.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            handler_cancelled.append(request.id)
            raise
        return ConfirmationResponse(action=ConfirmationAction.ALLOW)

    model = ScriptedModel([calls(("write_file", {"path": "out.txt", "content": "hello world"}))])
    loop, _ = build_loop(tmp_path, model)

    result = await asyncio.wait_for(
        loop.run(LoopInvocation(user_message="write", abort_event=abort), AgentCallbacks(on_confirmation_needed=confirm)),
        timeout=5,
    )

    assert isinstance(result, AgentAborted)
    assert not (tmp_path / "out.txt").exists()
    assert len(handler_cancelled) == 1
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_cancel_during_model_stream_aborts(tmp_path: Path):
    model = HangingModel()
    loop, _ = build_loop(tmp_path, model)
    abort = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, abort.set)

    result = await asyncio.wait_for(loop.run(LoopInvocation(user_message="hi", abort_event=abort)), timeout=5)

    assert isinstance(result, AgentAborted)
    assert model.cancelled


@pytest.mark.asyncio
async def test_already_aborted_never_calls_model(tmp_path: Path):
    model = ScriptedModel()
    loop, _ = build_loop(tmp_path, model)
    abort = asyncio.Event()
    abort.set()

    result = await loop.run(LoopInvocation(user_message="hi", abort_event=abort))

    assert isinstance(result, AgentAborted)
    assert model.calls == []


@pytest.mark.asyncio
async def test_model_error_becomes_model_failure(tmp_path: Path):
    model = ScriptedModel([LLMAPIError("Ollama API error 500: boom", status_code=500)])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(LoopInvocation(user_message="hi"))

    assert isinstance(result, ModelFailure)
    assert "boom" in result.message
    assert describe_error(result).startswith("Model error:")


@pytest.mark.asyncio
async def test_empty_response_is_nudged(tmp_path: Path):
    model = ScriptedModel([LLMResponse(content="  "), LLMResponse(content="answer")])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(LoopInvocation(user_message="hi"))

    assert isinstance(result, AgentResult)
    assert result.final_answer == "answer"
    assert model.calls[1][-1].content == EMPTY_RESPONSE_NUDGE


@pytest.mark.asyncio
async def test_tool_failure_is_an_observation(tmp_path: Path):
    model = ScriptedModel([calls(("read_file", {"path": "missing.txt"})), LLMResponse(content="it is missing")])
    loop, _ = build_loop(tmp_path, model)
    results = []

    result = await loop.run(LoopInvocation(user_message="read"), AgentCallbacks(on_tool_result=results.append))

    assert isinstance(result, AgentResult)
    assert results[0].error == "File not found: missing.txt"
    assert result.messages[2].content.startswith("Error: File not found: missing.txt")


class NotAResultTool(Tool):
    name = "bad"
    description = "Returns the wrong type"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return "plain string"


@pytest.mark.asyncio
async def test_executor_contract_violation_stops_run(tmp_path: Path):
    model = ScriptedModel([calls(("bad", {}))])
    safety = get_config().safety.model_copy(update={"tool_risks": {"bad": "safe"}})
    loop, registry = build_loop(tmp_path, model, safety=safety)
    registry.register(NotAResultTool())

    result = await loop.run(LoopInvocation(user_message="go"))

    assert isinstance(result, ToolContractViolation)
    assert result.kind == "tool_error"
    assert result.tool == "bad"
    assert "expected ToolResult" in result.message


@pytest.mark.asyncio
async def test_allow_always_skips_later_confirmations(tmp_path: Path):
    asked = []

    def confirm(request):
        asked.append(request.tool)
        return ConfirmationResponse(action=ConfirmationAction.ALLOW_ALWAYS)

    policy = ToolPolicyMemory()
    model = ScriptedModel([
        calls(("write_file", {"path": "one.txt", "content": "first file"})),
        calls(("write_file", {"path": "two.txt", "content": "second file"})),
        LLMResponse(content="wrote both"),
    ])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(
        LoopInvocation(user_message="write", tool_policy=policy),
        AgentCallbacks(on_confirmation_needed=confirm),
    )

    assert isinstance(result, AgentResult)
    assert asked == ["write_file"]
    assert policy.get("write_file") is ToolOverride.ALWAYS_ALLOW
    assert (tmp_path / "one.txt").read_text(encoding="utf-8") == "first file"
    assert (tmp_path / "two.txt").read_text(encoding="utf-8") == "second file"


@pytest.mark.asyncio
async def test_always_deny_blocks_without_asking(tmp_path: Path):
    asked = []
    blocked = []
    policy = ToolPolicyMemory({"run_command": "always_deny"})
    model = ScriptedModel([calls(("run_command", {"command": "ls"})), LLMResponse(content="fine")])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(
        LoopInvocation(user_message="list", tool_policy=policy),
        AgentCallbacks(
            on_confirmation_needed=lambda request: asked.append(request),
            on_tool_blocked=lambda tool, reason: blocked.append(reason),
        ),
    )

    assert isinstance(result, AgentResult)
    assert asked == []
    assert blocked == ["run_command is set to always deny"]
    assert result.messages[2].content.startswith("[TOOL FAILED - OPERATION NOT PERFORMED]")


@pytest.mark.asyncio
async def test_confirmation_without_handler_is_denied(tmp_path: Path):
    model = ScriptedModel([calls(("write_file", {"path": "x.txt", "content": "some content"})), LLMResponse(content="ok")])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(LoopInvocation(user_message="write"))

    assert isinstance(result, AgentResult)
    assert not (tmp_path / "x.txt").exists()
    assert "no confirmation handler" in result.messages[2].content


@pytest.mark.asyncio
async def test_plan_mode_raises_write_risk(tmp_path: Path):
    requests = []

    def confirm(request):
        requests.append(request)
        return ConfirmationResponse(action=ConfirmationAction.DENY)

    model = ScriptedModel([calls(("write_file", {"path": "plan.md", "content": "# plan"})), LLMResponse(content="ok")])
    loop, _ = build_loop(tmp_path, model)

    await loop.run(LoopInvocation(user_message="plan", mode=Mode.PLAN), AgentCallbacks(on_confirmation_needed=confirm))

    assert requests[0].risk_level is RiskLevel.RISKY
    assert "plan mode" in requests[0].reasons
    # plan mode prompt is rendered
    assert "plan mode" in model.calls[0][0].content


@pytest.mark.asyncio
async def test_failing_callbacks_do_not_break_the_run(tmp_path: Path):
    def explode(*args):
        raise RuntimeError("ui crashed")

    model = ScriptedModel([calls(("list_dir", {})), LLMResponse(content="done")])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(
        LoopInvocation(user_message="hi"),
        AgentCallbacks(on_reasoning_token=explode, on_tool_call=explode, on_tool_result=explode, on_step_complete=explode),
    )

    assert isinstance(result, AgentResult)
    assert result.final_answer == "done"


@pytest.mark.asyncio
async def test_history_is_carried_and_system_prompt_excluded(tmp_path: Path):
    model = ScriptedModel([LLMResponse(content="second answer")])
    loop, _ = build_loop(tmp_path, model)
    history = (Message(role="user", content="first"), Message(role="assistant", content="first answer"))
    result = await loop.run(LoopInvocation(user_message="second", history=history, system_prompt="custom system"))

    assert isinstance(result, AgentResult)
    assert model.calls[0][0].content == "custom system"
    assert [m.content for m in result.messages] == ["first", "first answer", "second", "second answer"]


class AbortingTool(Tool):
    """Sets the abort event partway through and still finishes its work."""

    name = "slow_step"
    description = "Aborts mid-run"
    parameters = {"type": "object", "properties": {}, "required": []}

    def __init__(self, abort: asyncio.Event):
        self.abort = abort
        self.started = 0
        self.finished = 0

    async def execute(self, **kwargs):
        self.started += 1
        self.abort.set()
        await asyncio.sleep(0.01)
        self.finished += 1
        return ToolResult(tool=self.name, output="finished")


@pytest.mark.asyncio
async def test_abort_during_tool_lets_it_finish_and_starts_nothing_after(tmp_path: Path):
    abort = asyncio.Event()
    model = ScriptedModel([calls(("slow_step", {}), ("slow_step", {}))])
    safety = get_config().safety.model_copy(update={"tool_risks": {"slow_step": "safe"}})
    loop, registry = build_loop(tmp_path, model, safety=safety)
    tool = AbortingTool(abort)
    registry.register(tool)
    results = []

    result = await loop.run(
        LoopInvocation(user_message="go", abort_event=abort),
        AgentCallbacks(on_tool_result=results.append),
    )

    assert isinstance(result, AgentAborted)
    assert tool.started == 1
    assert tool.finished == 1
    assert len(model.calls) == 1
    assert results == []


@pytest.mark.asyncio
async def test_async_notification_callbacks_are_awaited(tmp_path: Path):
    events: list[str] = []

    async def on_tool_call(call):
        await asyncio.sleep(0)
        events.append(f"call:{call.name}")

    async def on_tool_result(result):
        await asyncio.sleep(0)
        events.append(f"result:{result.tool}")

    async def on_step_complete(step):
        events.append(f"step:{len(step.actions)}")

    async def on_tool_blocked(tool, reason):
        events.append(f"blocked:{tool}")

    model = ScriptedModel([
        calls(("list_dir", {}), ("run_command", {"command": "rm -rf /"})),
        LLMResponse(content="done"),
    ])
    loop, _ = build_loop(tmp_path, model)

    result = await loop.run(
        LoopInvocation(user_message="hi"),
        AgentCallbacks(
            on_tool_call=on_tool_call,
            on_tool_result=on_tool_result,
            on_step_complete=on_step_complete,
            on_tool_blocked=on_tool_blocked,
        ),
    )

    assert isinstance(result, AgentResult)
    assert events == [
        "call:list_dir",
        "result:list_dir",
        "call:run_command",
        "blocked:run_command",
        "step:2",
    ]
