"""Terminal UI for Olly, rendered with rich."""

import asyncio
from dataclasses import dataclass

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from olly.agent import AgentCallbacks
from olly.context import CompactionResult, ContextStats
from olly.llm import ToolCall
from olly.tools.registry import ToolResult
from olly.types import (
    AgentStep,
    CommandPreview,
    ConfirmationAction,
    ConfirmationRequest,
    ConfirmationResponse,
    ContentPreview,
    DiffPreview,
    Mode,
    RiskLevel,
    ToolPolicyMemory,
)

_RISK_STYLES = {
    RiskLevel.SAFE: "green",
    RiskLevel.PROMPT: "cyan",
    RiskLevel.RISKY: "yellow",
    RiskLevel.DANGEROUS: "bold red",
}

_CONFIRM_CHOICES = {
    "y": ConfirmationAction.ALLOW,
    "n": ConfirmationAction.DENY,
    "a": ConfirmationAction.ALLOW_ALWAYS,
    "d": ConfirmationAction.DENY_ALWAYS,
}

_HELP_ROWS = (
    ("/mode [plan|build]", "Show or switch mode (no argument toggles)"),
    ("/context", "Show context window usage"),
    ("/compact", "Summarize older history now"),
    ("/policy [reset]", "Show or clear remembered always-allow/deny choices"),
    ("/clear", "Start over with an empty history"),
    ("/help", "Show this help"),
    ("/exit", "Quit"),
)


@dataclass(frozen=True)
class SlashCommand:
    name: str
    argument: str = ""


class TerminalUI:
    """Rich-based terminal rendering plus the interactive confirmation prompt."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._streaming = False
        self.streamed_text = False

    def print_welcome(self, model: str, mode: Mode) -> None:
        self.console.print(Panel(
            f"[bold cyan]Olly[/bold cyan]  model: {model}  mode: [bold]{mode.value}[/bold]\n"
            "Type /help for commands, Ctrl-C cancels the running turn.",
            border_style="cyan",
        ))

    def begin_turn(self) -> None:
        self._streaming = False
        self.streamed_text = False

    def stream_token(self, text: str) -> None:
        self._streaming = True
        self.streamed_text = True
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    def end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def print_tool_call(self, call: ToolCall) -> None:
        self.end_stream()
        args = ", ".join(f"{key}={value!r}" for key, value in call.arguments.items())
        if len(args) > 120:
            args = args[:117] + "..."
        self.console.print(Text(f"> {call.name}({args})", style="dim cyan"))

    def print_tool_result(self, result: ToolResult) -> None:
        if result.success:
            first_line = (result.output.strip().splitlines() or [""])[0]
            self.console.print(Text(f"  ok {first_line[:100]}", style="dim green"))
        else:
            self.console.print(Text(f"  error: {result.error}", style="red"))

    def print_tool_blocked(self, tool: str, reason: str) -> None:
        self.end_stream()
        self.console.print(Text(f"  blocked {tool}: {reason}", style="yellow"))

    def print_step(self, step: AgentStep) -> None:
        denied = len(step.actions) - len(step.observations)
        if denied:
            self.console.print(Text(f"  ({denied} call(s) not executed)", style="dim"))

    def print_answer(self, text: str) -> None:
        self.end_stream()
        if not self.streamed_text and text.strip():
            self.console.print(Markdown(text))
        self.console.print()

    def print_error(self, message: str) -> None:
        self.end_stream()
        self.console.print(Text(message, style="bold red"))

    def print_info(self, message: str) -> None:
        self.console.print(Text(message, style="cyan"))

    def print_log_line(self, line: str) -> None:
        self.end_stream()
        self.console.print(Text(line, style="dim"))

    def print_help(self) -> None:
        table = Table(title="Commands", show_header=False)
        table.add_column("Command", style="bold")
        table.add_column("Description")
        for command, description in _HELP_ROWS:
            table.add_row(command, description)
        self.console.print(table)

    def print_context_stats(self, stats: ContextStats) -> None:
        style = "red" if stats.is_critical else "yellow" if stats.is_near_limit else "green"
        table = Table(title="Context", show_header=True, header_style="bold cyan")
        table.add_column("Role")
        table.add_column("Tokens", justify="right")
        for role, tokens in stats.by_role.items():
            table.add_row(role, str(tokens))
        table.add_row("[bold]total[/bold]", f"[{style}]{stats.total_tokens} / {stats.max_tokens} ({stats.usage_percent:.1f}%)[/{style}]")
        self.console.print(table)

    def print_compaction(self, result: CompactionResult | None) -> None:
        if result is None or not result.changed:
            self.print_info("Nothing to compact.")
            return
        self.print_info(
            f"Compacted {result.original_count} -> {result.compacted_count} messages "
            f"({result.tokens_before} -> {result.tokens_after} tokens)."
        )

    def print_policy(self, policy: ToolPolicyMemory) -> None:
        if not len(policy):
            self.print_info("No remembered tool choices.")
            return
        for tool, override in policy.as_dict().items():
            self.console.print(f"  {tool}: {override}")

    def _render_preview(self, request: ConfirmationRequest) -> None:
        preview = request.preview
        if isinstance(preview, CommandPreview):
            self.console.print(Syntax(preview.command, "bash", word_wrap=True))
            self.console.print(Text(f"cwd: {preview.cwd}", style="dim"))
        elif isinstance(preview, ContentPreview):
            body = preview.content + ("\n... [truncated]" if preview.truncated else "")
            self.console.print(Panel(body, title="content", border_style="dim"))
        elif isinstance(preview, DiffPreview):
            self.console.print(Panel(Text(preview.before, style="red"), title=f"{preview.file_path} (before)", border_style="red"))
            self.console.print(Panel(Text(preview.after, style="green"), title="after", border_style="green"))

    def ask_confirmation(self, request: ConfirmationRequest) -> ConfirmationResponse:
        """Blocking prompt; run it off the event loop via ``confirm``."""
        self.end_stream()
        style = _RISK_STYLES.get(request.risk_level, "white")
        self.console.print(Text(f"[{request.risk_level.value}] {request.description}", style=style))
        for reason in request.reasons:
            self.console.print(Text(f"  - {reason}", style="dim"))
        self._render_preview(request)
        choice = Prompt.ask(
            "Allow? (y)es / (n)o / (a)lways allow / (d)eny always",
            choices=list(_CONFIRM_CHOICES),
            default="n",
            console=self.console,
        )
        return ConfirmationResponse(action=_CONFIRM_CHOICES[choice])

    async def confirm(self, request: ConfirmationRequest) -> ConfirmationResponse:
        return await asyncio.to_thread(self.ask_confirmation, request)

    def read_input(self, mode: Mode) -> str:
        return self.console.input(f"[bold]{mode.value}[/bold] > ")

    @staticmethod
    def parse_command(line: str) -> SlashCommand | None:
        """Parse ``/name arg``; returns None for ordinary prompts."""
        cleaned = line.strip()
        if not cleaned.startswith("/"):
            return None
        parts = cleaned.split(None, 1)
        return SlashCommand(name=parts[0].lower(), argument=parts[1].strip() if len(parts) > 1 else "")

    def callbacks(self) -> AgentCallbacks:
        return AgentCallbacks(
            on_reasoning_token=self.stream_token,
            on_tool_call=self.print_tool_call,
            on_tool_result=self.print_tool_result,
            on_step_complete=self.print_step,
            on_confirmation_needed=self.confirm,
            on_tool_blocked=self.print_tool_blocked,
        )
