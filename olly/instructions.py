"""Prompt templates for the agent loop and history compaction.

Templates are markdown files with ``{placeholder}`` fields. Each file in the
user prompt directory (``~/.olly/prompts`` unless configured otherwise)
shadows the packaged file of the same name, so one mode prompt can be
customized without copying the rest.
"""

from __future__ import annotations

import platform
from datetime import date
from pathlib import Path
from typing import Sequence

from olly.llm import Message, ToolDefinition
from olly.types import Mode

PACKAGED_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
USER_PROMPTS_DIR = Path("~/.olly/prompts")


class _KeepUnknownFields(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Builds the system prompt for a mode and the compaction request."""

    def __init__(
        self,
        user_dir: Path | str | None = None,
        packaged_dir: Path | str = PACKAGED_PROMPTS_DIR,
    ):
        self.search_path: tuple[Path, ...] = (
            Path(user_dir or USER_PROMPTS_DIR).expanduser(),
            Path(packaged_dir),
        )
        self._templates: dict[str, str] = {}

    def template(self, name: str) -> str:
        """Raw template text, first match along the search path."""
        if name not in self._templates:
            for directory in self.search_path:
                candidate = directory / name
                if candidate.is_file():
                    self._templates[name] = candidate.read_text(encoding="utf-8").strip()
                    break
            else:
                searched = ", ".join(str(d) for d in self.search_path)
                raise FileNotFoundError(f"Prompt template {name!r} not found in {searched}")
        return self._templates[name]

    def _fill(self, name: str, **fields: object) -> str:
        values = _KeepUnknownFields({key: str(value) for key, value in fields.items()})
        return self.template(name).format_map(values)

    def system_prompt(
        self,
        mode: Mode,
        project_root: Path | str,
        tools: Sequence[ToolDefinition],
    ) -> str:
        """Render ``system_<mode>.md`` with the tool list and host details."""
        tool_lines = "\n".join(f"- {tool.name}: {tool.description}" for tool in tools)
        return self._fill(
            f"system_{mode.value}.md",
            project_root=project_root,
            platform=platform.system(),
            date=date.today().isoformat(),
            tools=tool_lines or "(no tools available)",
        )

    def compaction_request(
        self,
        conversation: str,
        previous_summary: str | None = None,
    ) -> list[Message]:
        """Messages asking the model to summarize ``conversation``.

        A summary from an earlier compaction is folded into the request so the
        new summary replaces it.
        """
        previous = f"Earlier summary: {previous_summary}\n\n" if previous_summary else ""
        return [
            Message(role="system", content=self.template("compaction_system.md")),
            Message(
                role="user",
                content=self._fill(
                    "compaction_user.md",
                    previous_summary=previous,
                    conversation=conversation,
                ),
            ),
        ]
