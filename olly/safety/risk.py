"""Data-driven risk table for tool calls."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from olly.config import SafetyConfig
from olly.llm import ToolCall
from olly.safety.commands import classify_command
from olly.tools.registry import resolve_tool_path
from olly.types import Mode, RiskLevel

DEFAULT_TOOL_RISKS: dict[str, RiskLevel] = {
    "read_file": RiskLevel.SAFE,
    "list_dir": RiskLevel.SAFE,
    "glob": RiskLevel.SAFE,
    "grep": RiskLevel.SAFE,
    "todo_read": RiskLevel.SAFE,
    "todo_write": RiskLevel.SAFE,
    "task": RiskLevel.SAFE,
    "write_file": RiskLevel.PROMPT,
    "edit_file": RiskLevel.PROMPT,
    "run_command": RiskLevel.PROMPT,
}

# Unregistered tools are treated as mutating.
UNKNOWN_TOOL_RISK = RiskLevel.PROMPT

SIZE_CHANGE_THRESHOLD = 0.5


@dataclass
class RiskAssessment:
    level: RiskLevel
    reasons: list[str] = field(default_factory=list)


ArgumentPredicate = Callable[[dict[str, Any], Mode], RiskAssessment | None]


class RiskTable:
    """Maps a tool call to a risk level.

    The level is the tool's table entry, raised by its argument predicate
    (if any) and by plan mode. Tools whose entry is ``safe`` are never
    raised.
    """

    def __init__(self, config: SafetyConfig, project_root: Path):
        self.config = config
        self.project_root = project_root
        self.levels: dict[str, RiskLevel] = dict(DEFAULT_TOOL_RISKS)
        for name, level in config.tool_risks.items():
            self.levels[name] = RiskLevel(level)
        self.predicates: dict[str, ArgumentPredicate] = {
            "run_command": self._command_risk,
            "write_file": self._write_risk,
        }

    def base_level(self, tool: str) -> RiskLevel:
        return self.levels.get(tool, UNKNOWN_TOOL_RISK)

    def classify(self, call: ToolCall, mode: Mode) -> RiskAssessment:
        base = self.base_level(call.name)
        if base is RiskLevel.SAFE:
            return RiskAssessment(level=RiskLevel.SAFE)

        assessment = RiskAssessment(level=base)
        predicate = self.predicates.get(call.name)
        raised = predicate(call.arguments, mode) if predicate else None
        if raised is not None:
            assessment.level = assessment.level.at_least(raised.level)
            assessment.reasons.extend(raised.reasons)

        # run_command applies plan-mode rules itself (read-only whitelist).
        if mode is Mode.PLAN and call.name != "run_command":
            assessment.level = assessment.level.escalate()
            assessment.reasons.append("plan mode")
        return assessment

    def _command_risk(self, arguments: dict[str, Any], mode: Mode) -> RiskAssessment:
        result = classify_command(str(arguments.get("command", "")), mode, self.config)
        return RiskAssessment(level=result.level, reasons=list(result.reasons))

    def _write_risk(self, arguments: dict[str, Any], mode: Mode) -> RiskAssessment | None:
        old_size = existing_file_size(arguments.get("path"), self.project_root)
        if not old_size:
            return None
        new_size = len(str(arguments.get("content", "")).encode("utf-8"))
        change = abs(new_size - old_size) / old_size
        if change > SIZE_CHANGE_THRESHOLD:
            return RiskAssessment(
                level=RiskLevel.DANGEROUS,
                reasons=[f"overwrites existing file ({old_size} -> {new_size} bytes, {change:.0%} change)"],
            )
        return None


def existing_file_size(path: Any, project_root: Path) -> int | None:
    """Size of an existing regular file, or None."""
    if not path:
        return None
    try:
        resolved = resolve_tool_path(str(path), project_root)
        if resolved.is_file():
            return resolved.stat().st_size
    except OSError:
        return None
    return None
