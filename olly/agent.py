"""Agent loop: reasoning -> tool calls -> safety gate -> execution -> observations."""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from olly.cancellation import run_cancellable
from olly.config import AgentConfig, get_config
from olly.confirmation import ConfirmationHandler
from olly.exceptions import LLMError, ToolContractError, ToolError
from olly.instructions import InstructionLoader
from olly.llm import LLMProvider, Message, ToolCall, ToolDefinition
from olly.logging import get_logger
from olly.loop_detector import LoopDetector
from olly.safety.gate import Denied, GateAborted, SafetyGate
from olly.tools.registry import ToolRegistry, ToolResult
from olly.types import (
    AgentAborted,
    AgentError,
    AgentOutcome,
    AgentResult,
    AgentStep,
    LoopDetected,
    MaxIterationsReached,
    Mode,
    ModelFailure,
    RunStats,
    ToolContractViolation,
    ToolPolicyMemory,
)

log = get_logger(__name__)

EMPTY_RESPONSE_NUDGE = "[System: Please provide an answer or use a tool to gather more information.]"
TOOL_RESULT_HEADER = "[TOOL RESULT - USER CANNOT SEE THIS. You must include the relevant content in your response.]"


@dataclass(frozen=True)
class LoopInvocation:
    """Everything one run needs, passed explicitly instead of read from shared state."""

    user_message: str
    history: tuple[Message, ...] = ()
    mode: Mode = Mode.BUILD
    tool_policy: ToolPolicyMemory = field(default_factory=ToolPolicyMemory)
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    system_prompt: str | None = None
    session_id: str = ""


@dataclass
class AgentCallbacks:
    """Optional UI hooks. Only ``on_confirmation_needed`` returns a value.

    ``on_reasoning_token`` is called synchronously from inside the model
    stream. The other hooks may be plain functions or coroutine functions;
    coroutines are awaited before the loop moves on.
    """

    on_reasoning_token: Callable[[str], None] | None = None
    on_tool_call: Callable[[ToolCall], None | Awaitable[None]] | None = None
    on_tool_result: Callable[[ToolResult], None | Awaitable[None]] | None = None
    on_step_complete: Callable[[AgentStep], None | Awaitable[None]] | None = None
    on_confirmation_needed: ConfirmationHandler | None = None
    on_tool_blocked: Callable[[str, str], None | Awaitable[None]] | None = None


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a notification callback; its failures never change control flow."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.warning("Agent callback failed", callback=getattr(callback, "__name__", repr(callback)), error=str(e))


def denied_observation(call: ToolCall, decision: Denied) -> str:
    """Text fed back to the model for a call that did not run."""
    if decision.source == "user":
        return f"Error: User denied execution. The {call.name} operation did NOT execute."
    return (
        f"[TOOL FAILED - OPERATION NOT PERFORMED] The {call.name} operation was BLOCKED "
        f"and did NOT execute. Reason: {decision.reason}"
    )


def observation_text(result: ToolResult) -> str:
    if result.error is not None:
        text = f"Error: {result.error}"
        if result.output:
            text += f"\n{result.output}"
        return text
    return f"{TOOL_RESULT_HEADER}\n{result.output}"


def describe_error(error: AgentError) -> str:
    """User-facing description of a failed run."""
    if isinstance(error, AgentAborted):
        return "Cancelled."
    if isinstance(error, ModelFailure):
        return f"Model error: {error.message}"
    if isinstance(error, MaxIterationsReached):
        text = f"Stopped after {error.iterations} iterations without a final answer."
        if error.last_thought:
            text += f" Last thought: {error.last_thought}"
        return text
    if isinstance(error, LoopDetected):
        return (
            f"Stopped: {error.action.name} was called {error.attempts} times "
            "with the same arguments."
        )
    if isinstance(error, ToolContractViolation):
        return f"Tool error in {error.tool}: {error.message}"
    raise TypeError(f"Unknown agent error: {error!r}")


class AgentLoop:
    """Drives one user message to a final answer or a typed error.

    Tool calls in an iteration run sequentially, in request order. The abort
    event is checked before and after every suspension point: the model
    call, each confirmation wait and each tool execution.
    """

    def __init__(
        self,
        model: LLMProvider,
        executor: ToolRegistry,
        gate: SafetyGate | None = None,
        config: AgentConfig | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.model = model
        self.executor = executor
        self.gate = gate or SafetyGate(project_root=executor.project_root)
        self.config = config or get_config().agent
        self.instructions = instructions or InstructionLoader()

    def tool_definitions(self) -> list[ToolDefinition]:
        return self.executor.get_definitions()

    def build_system_prompt(self, mode: Mode) -> str:
        return self.instructions.system_prompt(mode, self.executor.project_root, self.tool_definitions())

    def _token_sink(self, callbacks: AgentCallbacks) -> Callable[[str], None] | None:
        if callbacks.on_reasoning_token is None:
            return None

        def sink(text: str) -> None:
            try:
                callbacks.on_reasoning_token(text)
            except Exception as e:
                log.warning("Agent callback failed", callback="on_reasoning_token", error=str(e))

        return sink

    async def run(
        self,
        invocation: LoopInvocation,
        callbacks: AgentCallbacks | None = None,
    ) -> AgentOutcome:
        """Run one invocation. Errors are returned as ``AgentError`` values."""
        callbacks = callbacks or AgentCallbacks()
        abort = invocation.abort_event
        started = time.monotonic()

        system = Message(
            role="system",
            content=invocation.system_prompt or self.build_system_prompt(invocation.mode),
        )
        transcript: list[Message] = [*invocation.history, Message(role="user", content=invocation.user_message)]
        steps: list[AgentStep] = []
        tools = self.tool_definitions()
        detector = (
            LoopDetector(self.config.loop_threshold, self.config.loop_window)
            if self.config.loop_detection
            else None
        )
        cap = max(1, self.config.max_iterations)
        iterations = 0
        executed = 0
        last_thought = ""
        self.gate.start_turn()

        log.info("Agent run started", session_id=invocation.session_id, mode=invocation.mode.value)

        while True:
            if iterations >= cap:
                log.warning("Max iterations reached", iterations=iterations)
                return MaxIterationsReached(iterations=cap, last_thought=last_thought)
            iterations += 1

            if abort.is_set():
                return AgentAborted()
            try:
                response, cancelled = await run_cancellable(
                    self.model.stream_chat(
                        [system, *transcript],
                        tools=tools or None,
                        on_token=self._token_sink(callbacks),
                    ),
                    abort,
                )
            except LLMError as e:
                log.error("Model call failed", error=str(e))
                return ModelFailure(message=str(e))
            except Exception as e:
                log.error("Model call raised unexpectedly", error=str(e), error_type=type(e).__name__)
                return ModelFailure(message=f"{type(e).__name__}: {e}")
            if cancelled or abort.is_set() or response is None:
                return AgentAborted()

            content = response.content or ""
            if content.strip():
                last_thought = content.strip()

            if not response.tool_calls:
                if not content.strip() and self.config.nudge_on_empty:
                    log.debug("Empty model response, nudging", iteration=iterations)
                    transcript.append(Message(role="user", content=EMPTY_RESPONSE_NUDGE))
                    continue
                transcript.append(Message(role="assistant", content=content))
                log.info("Agent run finished", iterations=iterations, tool_calls=executed)
                return AgentResult(
                    final_answer=content,
                    messages=tuple(transcript),
                    steps=tuple(steps),
                    stats=RunStats(
                        iterations=iterations,
                        tool_calls=executed,
                        duration_ms=int((time.monotonic() - started) * 1000),
                    ),
                )

            step_started = time.monotonic()
            calls = tuple(response.tool_calls)
            transcript.append(Message(role="assistant", content=content, tool_calls=calls))
            tool_messages: list[Message] = []
            observations: list[ToolResult] = []

            for call in calls:
                await _notify(callbacks.on_tool_call, call)

                if detector is not None:
                    attempts = detector.observe(call)
                    if detector.is_loop(attempts):
                        log.warning("Loop detected", tool=call.name, attempts=attempts)
                        return LoopDetected(action=call, attempts=attempts)

                if abort.is_set():
                    return AgentAborted()
                decision = await self.gate.authorize(
                    call,
                    invocation.mode,
                    invocation.tool_policy,
                    callbacks.on_confirmation_needed,
                    abort,
                )
                if isinstance(decision, GateAborted) or abort.is_set():
                    return AgentAborted()
                if isinstance(decision, Denied):
                    await _notify(callbacks.on_tool_blocked, call.name, decision.reason)
                    tool_messages.append(Message(
                        role="tool",
                        content=denied_observation(call, decision),
                        tool_call_id=call.id,
                        tool_name=call.name,
                    ))
                    continue

                exec_started = time.monotonic()
                try:
                    result = await self.executor.execute(call.name, call.arguments)
                except ToolContractError as e:
                    log.error("Executor contract violated", tool=call.name, error=str(e))
                    return ToolContractViolation(tool=call.name, message=e.detail)
                except ToolError as e:
                    result = ToolResult(tool=call.name, error=str(e))
                except Exception as e:
                    log.error("Executor raised unexpectedly", tool=call.name, error=str(e))
                    return ToolContractViolation(tool=call.name, message=f"{type(e).__name__}: {e}")
                if not isinstance(result, ToolResult):
                    return ToolContractViolation(
                        tool=call.name,
                        message=f"expected ToolResult, got {type(result).__name__}",
                    )

                result = result.model_copy(update={"tool": call.name, "call_id": call.id})
                executed += 1
                self.gate.record_execution(call, result, int((time.monotonic() - exec_started) * 1000))
                if abort.is_set():
                    return AgentAborted()

                observations.append(result)
                await _notify(callbacks.on_tool_result, result)
                tool_messages.append(Message(
                    role="tool",
                    content=observation_text(result),
                    tool_call_id=call.id,
                    tool_name=call.name,
                ))

            transcript.extend(tool_messages)
            step = AgentStep(
                actions=calls,
                observations=tuple(observations),
                thought=content.strip(),
                duration_ms=int((time.monotonic() - step_started) * 1000),
            )
            steps.append(step)
            await _notify(callbacks.on_step_complete, step)
