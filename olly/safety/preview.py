"""Human-readable descriptions and previews for confirmation prompts."""

from pathlib import Path
from typing import Any

from olly.llm import ToolCall
from olly.tools.registry import resolve_tool_path
from olly.types import CommandPreview, ContentPreview, DiffPreview, Preview

DIFF_CONTEXT_LINES = 3


def _shorten(text: str, limit: int = 60) -> str:
    flat = " ".join(str(text).split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


def describe_call(call: ToolCall) -> str:
    args = call.arguments
    if call.name == "run_command":
        cwd = args.get("cwd")
        suffix = f" (in {cwd})" if cwd else ""
        return f"Execute: {args.get('command', '')}{suffix}"
    if call.name == "write_file":
        size = len(str(args.get("content", "")).encode("utf-8"))
        return f"Write {size} bytes to {args.get('path', '')}"
    if call.name == "edit_file":
        return f"Edit {args.get('path', '')}: replace \"{_shorten(args.get('old_string', ''))}\""
    if args:
        rendered = ", ".join(f"{key}={_shorten(repr(value), 40)}" for key, value in args.items())
        return f"{call.name}({rendered})"
    return call.name


def _context_window(content: str, old: str, new: str) -> tuple[str, str] | None:
    """Return before/after snippets around the single replaced region."""
    index = content.find(old)
    if index < 0:
        return None
    lines = content.splitlines(keepends=True)
    start_line = content.count("\n", 0, index)
    end_line = content.count("\n", 0, index + len(old))
    first = max(0, start_line - DIFF_CONTEXT_LINES)
    last = min(len(lines), end_line + DIFF_CONTEXT_LINES + 1)
    before = "".join(lines[first:last])
    return before.rstrip("\n"), before.replace(old, new, 1).rstrip("\n")


def build_preview(call: ToolCall, project_root: Path, max_chars: int = 2000) -> Preview | None:
    args: dict[str, Any] = call.arguments
    if call.name == "run_command":
        cwd = args.get("cwd") or "."
        return CommandPreview(
            command=str(args.get("command", "")),
            cwd=str(resolve_tool_path(str(cwd), project_root)),
        )
    if call.name == "write_file":
        content = str(args.get("content", ""))
        truncated = len(content) > max_chars
        return ContentPreview(content=content[:max_chars] if truncated else content, truncated=truncated)
    if call.name == "edit_file":
        path = str(args.get("path", ""))
        old = str(args.get("old_string", ""))
        new = str(args.get("new_string", ""))
        before, after = old, new
        try:
            target = resolve_tool_path(path, project_root)
            if target.is_file() and old:
                window = _context_window(target.read_text(encoding="utf-8"), old, new)
                if window is not None:
                    before, after = window
        except (OSError, UnicodeDecodeError):
            pass
        return DiffPreview(file_path=path, before=before, after=after)
    return None
