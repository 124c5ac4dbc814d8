"""Read-only file tools: read_file and list_dir."""

from pathlib import Path
from typing import Any

from olly.config import get_config
from olly.logging import get_logger
from olly.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read the contents of a file at the given path."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str,
        offset: int | None = None,
        limit: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            offset: Optional 1-indexed first line
            limit: Optional line limit

        Returns:
            ToolResult with file contents
        """
        try:
            file_path = resolve_tool_path(path, kwargs.get("_project_root"))

            if not file_path.exists():
                return ToolResult.failure(f"File not found: {path}")
            if not file_path.is_file():
                return ToolResult.failure(f"Not a file: {path}")

            max_size = get_config().tools.max_read_bytes
            file_size = file_path.stat().st_size
            if file_size > max_size and not (offset or limit):
                return ToolResult.failure(
                    f"File too large: {file_size} bytes (max {max_size}). Use offset/limit to read a range."
                )

            content = file_path.read_text(encoding="utf-8", errors="replace")

            if offset or limit:
                lines = content.splitlines()
                start = max(int(offset or 1), 1)
                selected = lines[start - 1:]
                if limit:
                    selected = selected[: int(limit)]
                content = "\n".join(selected)
                end = start + len(selected) - 1
                return ToolResult(output=f"[{path} lines {start}-{end} of {len(lines)}]\n{content}")

            return ToolResult(output=content)

        except Exception as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult.failure(str(e))


class ListDirTool(Tool):
    """List directory entries."""

    name = "list_dir"
    description = "List files and directories at the given path. Directories end with '/'."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The directory path to list (default: project root)",
            },
        },
        "required": [],
    }

    async def execute(self, path: str = ".", **kwargs: Any) -> ToolResult:
        try:
            dir_path = resolve_tool_path(path, kwargs.get("_project_root"))
            if not dir_path.exists():
                return ToolResult.failure(f"Directory not found: {path}")
            if not dir_path.is_dir():
                return ToolResult.failure(f"Not a directory: {path}")

            entries: list[Path] = sorted(dir_path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
            if not entries:
                return ToolResult(output="[empty directory]")
            names = [f"{entry.name}/" if entry.is_dir() else entry.name for entry in entries]
            return ToolResult(output="\n".join(names))

        except Exception as e:
            log.error("List dir failed", path=path, error=str(e))
            return ToolResult.failure(str(e))
