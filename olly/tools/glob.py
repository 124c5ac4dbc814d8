"""Search tools: glob (find files) and grep (search contents)."""

import asyncio
import re
from pathlib import Path
from typing import Any

from olly.config import get_config
from olly.logging import get_logger
from olly.tools.registry import Tool, ToolResult, is_excluded_path, resolve_tool_path

log = get_logger(__name__)

_MAX_LINE_CHARS = 200


def _scan(root: Path, pattern: str, limit: int) -> list[Path]:
    """Return files under ``root`` matching ``pattern``, skipping excluded dirs."""
    matches: list[Path] = []
    for candidate in sorted(root.glob(pattern)):
        if not candidate.is_file():
            continue
        relative = candidate.relative_to(root)
        if is_excluded_path(relative):
            continue
        matches.append(relative)
        if len(matches) >= limit:
            break
    return matches


class GlobTool(Tool):
    """Find files by pattern."""

    name = "glob"
    description = (
        "Find files matching a glob pattern (e.g. '**/*.py'). "
        "Excludes .git, node_modules and build directories."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Glob pattern (e.g., '**/*.py', 'src/**/*.ts')",
            },
            "cwd": {
                "type": "string",
                "description": "Directory to search from (default: project root)",
            },
        },
        "required": ["pattern"],
    }

    async def execute(self, pattern: str, cwd: str | None = None, **kwargs: Any) -> ToolResult:
        """Find files matching pattern.

        Returns:
            ToolResult listing matching paths relative to ``cwd``
        """
        if not str(pattern or "").strip():
            return ToolResult.failure("Pattern must not be empty")
        try:
            root = resolve_tool_path(cwd or ".", kwargs.get("_project_root"))
            limit = get_config().tools.max_results
            matches = await asyncio.to_thread(_scan, root, pattern, limit)

            if not matches:
                return ToolResult(output=f"No files found matching: {pattern}")

            prefix = Path(cwd) if cwd else Path()
            lines = [str(prefix / match) for match in matches]
            if len(matches) >= limit:
                lines.append(f"[results limited to {limit}]")
            return ToolResult(output="\n".join(lines))

        except Exception as e:
            log.error("Glob failed", pattern=pattern, error=str(e))
            return ToolResult.failure(str(e))


class GrepTool(Tool):
    """Search file contents with a regex."""

    name = "grep"
    description = (
        "Search file contents using a case-insensitive regex pattern. "
        "Returns matching lines as 'file:line: content'."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Regex pattern to search for in file contents",
            },
            "file_pattern": {
                "type": "string",
                "description": "Glob pattern to filter files (e.g., '**/*.py'). Defaults to all files.",
            },
            "cwd": {
                "type": "string",
                "description": "Directory to search from (default: project root)",
            },
        },
        "required": ["pattern"],
    }

    @staticmethod
    def _search(root: Path, regex: re.Pattern[str], file_pattern: str, limit: int) -> list[str]:
        results: list[str] = []
        for relative in _scan(root, file_pattern, limit=10_000):
            try:
                text = (root / relative).read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    results.append(f"{relative}:{number}: {line.strip()[:_MAX_LINE_CHARS]}")
                    if len(results) >= limit:
                        return results
        return results

    async def execute(
        self,
        pattern: str,
        file_pattern: str | None = None,
        cwd: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            return ToolResult.failure(f"Invalid regex: {e}")
        try:
            root = resolve_tool_path(cwd or ".", kwargs.get("_project_root"))
            limit = get_config().tools.max_results
            results = await asyncio.to_thread(self._search, root, regex, file_pattern or "**/*", limit)
            if not results:
                return ToolResult(output=f"No matches for: {pattern}")
            if len(results) >= limit:
                results.append(f"[results limited to {limit}]")
            return ToolResult(output="\n".join(results))

        except Exception as e:
            log.error("Grep failed", pattern=pattern, error=str(e))
            return ToolResult.failure(str(e))
