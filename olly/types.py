"""Shared value types for the agent loop, safety gate and callers."""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Iterator

from olly.llm import Message, ToolCall
from olly.tools.registry import ToolResult


class Mode(str, Enum):
    """Operating mode. Plan mode is the more restrictive one."""

    PLAN = "plan"
    BUILD = "build"

    def toggled(self) -> "Mode":
        return Mode.BUILD if self is Mode.PLAN else Mode.PLAN


class RiskLevel(str, Enum):
    """Risk classification of a tool call, ordered from least to most risky."""

    SAFE = "safe"
    PROMPT = "prompt"
    RISKY = "risky"
    DANGEROUS = "dangerous"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def escalate(self, steps: int = 1) -> "RiskLevel":
        """Raise the level by ``steps``, capped at dangerous."""
        return _RISK_ORDER[min(self.rank + steps, len(_RISK_ORDER) - 1)]

    def at_least(self, other: "RiskLevel") -> "RiskLevel":
        return self if self.rank >= other.rank else other


_RISK_ORDER = (RiskLevel.SAFE, RiskLevel.PROMPT, RiskLevel.RISKY, RiskLevel.DANGEROUS)


class ToolOverride(str, Enum):
    """Remembered per-tool decision."""

    ALWAYS_ALLOW = "always_allow"
    ALWAYS_DENY = "always_deny"


class ToolPolicyMemory:
    """Session-scoped tool name -> override map.

    Mutated only through ``remember`` (driven by allow_always/deny_always
    answers); the gate reads it on every call.
    """

    def __init__(self, initial: dict[str, ToolOverride | str] | None = None):
        self._overrides: dict[str, ToolOverride] = {}
        for name, value in (initial or {}).items():
            self.remember(name, ToolOverride(value))

    @staticmethod
    def _key(tool: str) -> str:
        return str(tool or "").strip().lower()

    def get(self, tool: str) -> ToolOverride | None:
        return self._overrides.get(self._key(tool))

    def remember(self, tool: str, override: ToolOverride) -> None:
        key = self._key(tool)
        if key:
            self._overrides[key] = override

    def clear(self) -> None:
        self._overrides.clear()

    def as_dict(self) -> dict[str, str]:
        return {name: override.value for name, override in self._overrides.items()}

    def __contains__(self, tool: object) -> bool:
        return isinstance(tool, str) and self._key(tool) in self._overrides

    def __iter__(self) -> Iterator[str]:
        return iter(self._overrides)

    def __len__(self) -> int:
        return len(self._overrides)


@dataclass(frozen=True)
class CommandPreview:
    command: str
    cwd: str


@dataclass(frozen=True)
class ContentPreview:
    content: str
    truncated: bool = False


@dataclass(frozen=True)
class DiffPreview:
    file_path: str
    before: str
    after: str


Preview = CommandPreview | ContentPreview | DiffPreview


@dataclass(frozen=True)
class ConfirmationRequest:
    """What the user is asked to approve."""

    id: str
    tool: str
    risk_level: RiskLevel
    description: str
    preview: Preview | None = None
    call_id: str = ""
    reasons: tuple[str, ...] = ()


class ConfirmationAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_ALWAYS = "allow_always"
    DENY_ALWAYS = "deny_always"


@dataclass(frozen=True)
class ConfirmationResponse:
    action: ConfirmationAction
    # Tool the remembered override applies to; defaults to the requesting tool.
    for_tool: str | None = None


@dataclass(frozen=True)
class AgentStep:
    """One iteration's tool calls and the observations fed back for them.

    ``actions`` holds every requested call; ``observations`` only those that
    were not denied, so ``len(observations)`` equals the number of calls that
    actually reached the executor.
    """

    actions: tuple[ToolCall, ...]
    observations: tuple[ToolResult, ...]
    thought: str = ""
    duration_ms: int = 0


@dataclass(frozen=True)
class RunStats:
    iterations: int = 0
    tool_calls: int = 0
    duration_ms: int = 0


@dataclass(frozen=True)
class AgentResult:
    final_answer: str
    messages: tuple[Message, ...]
    steps: tuple[AgentStep, ...]
    stats: RunStats = field(default_factory=RunStats)


@dataclass(frozen=True)
class AgentError:
    """Base of the error variants returned (never raised) by the agent loop."""

    kind: ClassVar[str] = "error"


@dataclass(frozen=True)
class AgentAborted(AgentError):
    kind: ClassVar[str] = "aborted"


@dataclass(frozen=True)
class ModelFailure(AgentError):
    message: str
    kind: ClassVar[str] = "model_error"


@dataclass(frozen=True)
class MaxIterationsReached(AgentError):
    iterations: int
    last_thought: str = ""
    kind: ClassVar[str] = "max_iterations"


@dataclass(frozen=True)
class LoopDetected(AgentError):
    action: ToolCall
    attempts: int
    kind: ClassVar[str] = "loop_detected"


@dataclass(frozen=True)
class ToolContractViolation(AgentError):
    tool: str
    message: str
    kind: ClassVar[str] = "tool_error"


AgentOutcome = AgentResult | AgentError
