"""Safety gate: decide whether a tool call may run, must be confirmed, or is denied."""

import asyncio
import uuid
from dataclasses import dataclass
from pathlib import Path

from olly.config import SafetyConfig, get_config
from olly.confirmation import ConfirmationHandler, request_confirmation
from olly.llm import ToolCall
from olly.logging import get_logger
from olly.safety.audit import AuditLog
from olly.safety.commands import is_blocked_shell_command
from olly.safety.paths import validate_tool_paths
from olly.safety.preview import build_preview, describe_call
from olly.safety.risk import RiskTable, existing_file_size
from olly.tools.registry import ToolResult
from olly.types import (
    ConfirmationAction,
    ConfirmationRequest,
    ConfirmationResponse,
    Mode,
    RiskLevel,
    ToolOverride,
    ToolPolicyMemory,
)

log = get_logger(__name__)

MIN_OVERWRITE_CHARS = 10


@dataclass(frozen=True)
class Allowed:
    # safe | always_allow | user
    via: str = "safe"


@dataclass(frozen=True)
class Denied:
    reason: str
    # veto | policy | user
    source: str = "policy"


@dataclass(frozen=True)
class NeedsConfirmation:
    request: ConfirmationRequest


@dataclass(frozen=True)
class GateAborted:
    """The abort signal fired while waiting for the user."""


GateDecision = Allowed | Denied | NeedsConfirmation


class SafetyGate:
    """Classifies tool calls and, when needed, suspends for a human decision.

    One gate serves one session: the per-session call counter lives here,
    while remembered overrides live in the caller's ``ToolPolicyMemory``.
    """

    def __init__(
        self,
        config: SafetyConfig | None = None,
        project_root: Path | str | None = None,
        audit_log: AuditLog | None = None,
        session_id: str = "",
    ):
        app_config = get_config()
        self.config = config or app_config.safety
        self.project_root = (
            Path(project_root).expanduser().resolve()
            if project_root is not None
            else app_config.resolved_project_root()
        )
        self.risk_table = RiskTable(self.config, self.project_root)
        if audit_log is None:
            audit_log = AuditLog(
                self.config.resolve_audit_log_path(self.project_root),
                enabled=self.config.enable_audit_log,
                session_id=session_id,
            )
        self.audit_log = audit_log
        self._turn_calls = 0
        self._session_calls = 0

    def start_turn(self) -> None:
        """Reset the per-turn call counter; called once per user message."""
        self._turn_calls = 0

    @property
    def turn_calls(self) -> int:
        return self._turn_calls

    @property
    def session_calls(self) -> int:
        return self._session_calls

    def _veto(self, call: ToolCall) -> str | None:
        """Reasons a call is refused outright, without asking."""
        if self._turn_calls >= self.config.max_tool_calls_per_turn:
            return f"Rate limit exceeded: maximum {self.config.max_tool_calls_per_turn} tool calls per turn."
        if self._session_calls >= self.config.max_tool_calls_per_session:
            return f"Rate limit exceeded: maximum {self.config.max_tool_calls_per_session} tool calls per session."

        args = call.arguments
        if call.name == "run_command":
            blocked, matched = is_blocked_shell_command(str(args.get("command", "")), self.config.blocked_commands)
            if blocked:
                if matched == "empty_command":
                    return "Command is empty"
                if matched == "unparseable_command":
                    return "Command is not parseable"
                return f"Command matches blocked pattern: {matched}"

        path_reason = validate_tool_paths(
            call.name,
            args,
            self.project_root,
            self.config.denied_paths,
            self.config.restrict_to_project,
        )
        if path_reason:
            return path_reason

        if call.name == "write_file":
            content = str(args.get("content", ""))
            if existing_file_size(args.get("path"), self.project_root) and len(content.strip()) < MIN_OVERWRITE_CHARS:
                return (
                    "Refusing to overwrite an existing file with empty or minimal content. "
                    "Use edit_file for targeted changes."
                )
        return None

    def _override_for(self, tool: str, tool_policy: ToolPolicyMemory) -> ToolOverride | None:
        remembered = tool_policy.get(tool)
        if remembered is not None:
            return remembered
        configured = self.config.tool_overrides.get(tool)
        return ToolOverride(configured) if configured else None

    def evaluate(self, call: ToolCall, mode: Mode, tool_policy: ToolPolicyMemory) -> GateDecision:
        """Decide without side effects."""
        veto = self._veto(call)
        if veto:
            return Denied(reason=veto, source="veto")

        override = self._override_for(call.name, tool_policy)
        if override is ToolOverride.ALWAYS_DENY:
            return Denied(reason=f"{call.name} is set to always deny", source="policy")

        assessment = self.risk_table.classify(call, mode)
        if assessment.level is RiskLevel.SAFE:
            return Allowed(via="safe")
        if override is ToolOverride.ALWAYS_ALLOW:
            return Allowed(via="always_allow")

        request = ConfirmationRequest(
            id=f"req-{uuid.uuid4().hex[:12]}",
            tool=call.name,
            risk_level=assessment.level,
            description=describe_call(call),
            preview=build_preview(call, self.project_root, self.config.preview_max_chars),
            call_id=call.id,
            reasons=tuple(assessment.reasons),
        )
        return NeedsConfirmation(request=request)

    async def authorize(
        self,
        call: ToolCall,
        mode: Mode,
        tool_policy: ToolPolicyMemory,
        confirm: ConfirmationHandler | None,
        abort_event: asyncio.Event,
    ) -> Allowed | Denied | GateAborted:
        """Evaluate and, if needed, ask the user. Counts the call against rate limits."""
        decision = self.evaluate(call, mode, tool_policy)
        self._turn_calls += 1
        self._session_calls += 1

        if isinstance(decision, Allowed):
            log.debug("Tool call allowed", tool=call.name, via=decision.via)
            self.audit_log.record(call.name, call.arguments, "allowed", reason=decision.via)
            return decision
        if isinstance(decision, Denied):
            log.info("Tool call denied", tool=call.name, reason=decision.reason, source=decision.source)
            self.audit_log.record(call.name, call.arguments, "denied", reason=decision.reason)
            return decision

        request = decision.request
        if confirm is None:
            reason = "Tool requires confirmation but no confirmation handler provided"
            log.warning("Confirmation required but no handler configured", tool=call.name)
            self.audit_log.record(call.name, call.arguments, "denied", reason=reason)
            return Denied(reason=reason, source="policy")

        log.info("Confirmation required", tool=call.name, risk=request.risk_level.value, request_id=request.id)
        response = await request_confirmation(request, confirm, abort_event)
        if response is None:
            self.audit_log.record(call.name, call.arguments, "rejected", reason="aborted")
            return GateAborted()
        return self._apply_response(call, response, tool_policy)

    def _apply_response(
        self,
        call: ToolCall,
        response: ConfirmationResponse,
        tool_policy: ToolPolicyMemory,
    ) -> Allowed | Denied:
        target = response.for_tool or call.name
        if response.action is ConfirmationAction.ALLOW_ALWAYS:
            tool_policy.remember(target, ToolOverride.ALWAYS_ALLOW)
            log.info("Remembered tool override", tool=target, override="always_allow")
        elif response.action is ConfirmationAction.DENY_ALWAYS:
            tool_policy.remember(target, ToolOverride.ALWAYS_DENY)
            log.info("Remembered tool override", tool=target, override="always_deny")

        if response.action in (ConfirmationAction.ALLOW, ConfirmationAction.ALLOW_ALWAYS):
            self.audit_log.record(call.name, call.arguments, "confirmed", reason=response.action.value)
            return Allowed(via="user")
        self.audit_log.record(call.name, call.arguments, "rejected", reason=response.action.value)
        return Denied(reason="user", source="user")

    def record_execution(self, call: ToolCall, result: ToolResult, duration_ms: int) -> None:
        self.audit_log.record(
            call.name,
            call.arguments,
            "executed",
            duration_ms=duration_ms,
            output=result.output,
            error=result.error,
        )
