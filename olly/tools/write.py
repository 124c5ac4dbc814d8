"""Mutating file tools: write_file and edit_file."""

from typing import Any

from olly.logging import get_logger
from olly.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)


class WriteFileTool(Tool):
    """Create or overwrite a file."""

    name = "write_file"
    description = (
        "Create a new file or completely overwrite an existing one. "
        "Always provide the full file content; prefer edit_file for small changes."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path to write to",
            },
            "content": {
                "type": "string",
                "description": "The content to write to the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        """Write content to a file, creating parent directories."""
        try:
            file_path = resolve_tool_path(path, kwargs.get("_project_root"))
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
            return ToolResult(output=f"Wrote {len(content.encode('utf-8'))} bytes to {path}")

        except Exception as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult.failure(str(e))


class EditFileTool(Tool):
    """Replace one exact occurrence of a string in a file."""

    name = "edit_file"
    description = (
        "Replace a specific string in a file. old_string must match exactly once "
        "(including whitespace). Use read_file first to see the exact content."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path to edit",
            },
            "old_string": {
                "type": "string",
                "description": "The exact string to find and replace",
            },
            "new_string": {
                "type": "string",
                "description": "The string to replace it with",
            },
        },
        "required": ["path", "old_string", "new_string"],
    }

    async def execute(self, path: str, old_string: str, new_string: str, **kwargs: Any) -> ToolResult:
        if not old_string:
            return ToolResult.failure("old_string must not be empty")
        try:
            file_path = resolve_tool_path(path, kwargs.get("_project_root"))
            if not file_path.is_file():
                return ToolResult.failure(f"File not found: {path}")

            content = file_path.read_text(encoding="utf-8")
            occurrences = content.count(old_string)
            if occurrences == 0:
                return ToolResult.failure(
                    "String not found in file. Make sure it matches exactly, including whitespace."
                )
            if occurrences > 1:
                return ToolResult.failure(
                    f"String found {occurrences} times. Provide a more specific string that matches exactly once."
                )

            file_path.write_text(content.replace(old_string, new_string, 1), encoding="utf-8")
            return ToolResult(output=f"Replaced 1 occurrence in {path}")

        except Exception as e:
            log.error("Edit failed", path=path, error=str(e))
            return ToolResult.failure(str(e))
