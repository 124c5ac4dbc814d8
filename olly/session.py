"""In-memory session and the runner that feeds it through the agent loop."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from olly.agent import AgentCallbacks, AgentLoop, LoopInvocation
from olly.config import Config, get_config
from olly.context import CompactionLevel, CompactionResult, ContextManager, ContextStats
from olly.exceptions import SessionBusyError
from olly.instructions import InstructionLoader
from olly.llm import LLMProvider, Message
from olly.logging import get_logger, turn_context
from olly.safety.gate import SafetyGate
from olly.tools.registry import ToolRegistry
from olly.types import AgentOutcome, AgentResult, Mode, ToolPolicyMemory

log = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Session:
    """Conversation state owned by the caller between turns."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str = "default"
    mode: Mode = Mode.BUILD
    messages: list[Message] = field(default_factory=list)
    tool_policy: ToolPolicyMemory = field(default_factory=ToolPolicyMemory)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def touch(self) -> None:
        self.updated_at = _now_iso()


class SessionRunner:
    """Runs turns for one session, one at a time.

    Successful turns replace the stored history with the run's messages;
    failed or cancelled turns leave it untouched.
    """

    def __init__(
        self,
        session: Session,
        model: LLMProvider,
        executor: ToolRegistry,
        gate: SafetyGate | None = None,
        context: ContextManager | None = None,
        config: Config | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.session = session
        self.model = model
        self.executor = executor
        self.config = config or get_config()
        self.instructions = instructions or InstructionLoader()
        self.gate = gate or SafetyGate(
            config=self.config.safety,
            project_root=executor.project_root,
            session_id=session.id,
        )
        self.loop = AgentLoop(
            model=model,
            executor=executor,
            gate=self.gate,
            config=self.config.agent,
            instructions=self.instructions,
        )
        self.context = context or ContextManager(config=self.config.context, instructions=self.instructions)
        self._busy = False
        self._abort_event: asyncio.Event | None = None
        self._context_limit: int | None = None

    @property
    def busy(self) -> bool:
        return self._busy

    def cancel(self) -> bool:
        """Signal the running turn to stop. Returns False when idle."""
        if self._abort_event is None:
            return False
        self._abort_event.set()
        return True

    def set_mode(self, mode: Mode | str) -> Mode:
        self.session.mode = Mode(mode)
        self.session.touch()
        return self.session.mode

    def toggle_mode(self) -> Mode:
        return self.set_mode(self.session.mode.toggled())

    async def context_limit(self) -> int:
        """Model context window, fetched once; falls back to config."""
        if self._context_limit is None:
            reported = await self.model.fetch_context_length()
            self._context_limit = int(reported) if reported else int(self.config.context.max_tokens)
        return self._context_limit

    async def context_stats(self) -> ContextStats:
        system = Message(role="system", content=self.loop.build_system_prompt(self.session.mode))
        return self.context.compute_stats([system, *self.session.messages], await self.context_limit())

    async def send(
        self,
        message: str,
        callbacks: AgentCallbacks | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AgentOutcome:
        """Run one user message through the agent loop."""
        if self._busy:
            raise SessionBusyError(self.session.id)
        self._busy = True
        abort = abort_event or asyncio.Event()
        self._abort_event = abort
        try:
            invocation = LoopInvocation(
                user_message=message,
                history=tuple(self.session.messages),
                mode=self.session.mode,
                tool_policy=self.session.tool_policy,
                abort_event=abort,
                session_id=self.session.id,
            )
            with turn_context(self.session.id, self.session.mode.value):
                outcome = await self.loop.run(invocation, callbacks)
            if isinstance(outcome, AgentResult):
                self.session.messages = list(outcome.messages)
                self.session.touch()
                turns = self.session.metadata.setdefault("turns", 0)
                self.session.metadata["turns"] = turns + 1
            else:
                log.info("Turn ended without result", session_id=self.session.id, error=outcome.kind)
        finally:
            self._busy = False
            self._abort_event = None

        if isinstance(outcome, AgentResult) and self.config.context.auto_compact:
            await self.maybe_compact(trigger="auto")
        return outcome

    async def maybe_compact(
        self,
        level: CompactionLevel | None = None,
        trigger: str = "manual",
    ) -> CompactionResult | None:
        """Compact stored history if usage calls for it (or at ``level``)."""
        if self._busy:
            raise SessionBusyError(self.session.id)
        if level is None:
            stats = await self.context_stats()
            level = self.context.compaction_level_for(stats.usage_percent)
        if level <= CompactionLevel.NONE:
            return None

        self._busy = True
        try:
            result = await self.context.compact(self.session.messages, level, self.model)
        finally:
            self._busy = False

        if result.changed or result.messages != tuple(self.session.messages):
            self.session.messages = list(result.messages)
            self.session.touch()
            meta = self.session.metadata.setdefault("compaction", {})
            meta["count"] = int(meta.get("count", 0)) + 1
            meta[f"{trigger}_count"] = int(meta.get(f"{trigger}_count", 0)) + 1
            meta["last_trigger"] = trigger
            meta["last_level"] = result.level.name.lower()
            meta["last_before_tokens"] = result.tokens_before
            meta["last_after_tokens"] = result.tokens_after
            meta["last_compacted_at"] = self.session.updated_at
        return result

    async def compact(self, level: CompactionLevel | None = None) -> CompactionResult | None:
        """Manual compaction: at least ``light`` even below the near-limit threshold."""
        if level is None:
            stats = await self.context_stats()
            level = max(CompactionLevel.LIGHT, self.context.compaction_level_for(stats.usage_percent))
        return await self.maybe_compact(level=level, trigger="manual")
