"""Path validation: keep tool paths inside the project and away from secrets."""

import fnmatch
from pathlib import Path
from typing import Any

from olly.tools.registry import resolve_tool_path

# Argument names that carry filesystem paths, per tool.
PATH_ARGUMENTS: dict[str, tuple[str, ...]] = {
    "read_file": ("path",),
    "write_file": ("path",),
    "edit_file": ("path",),
    "list_dir": ("path",),
    "glob": ("cwd",),
    "grep": ("cwd",),
    "run_command": ("cwd",),
}


def matches_denied_pattern(relative: Path, patterns: list[str]) -> str | None:
    """Return the first denied pattern matching the file name or relative path."""
    name = relative.name
    posix = relative.as_posix()
    for pattern in patterns:
        cleaned = str(pattern or "").strip()
        if not cleaned:
            continue
        if fnmatch.fnmatch(name, cleaned) or fnmatch.fnmatch(posix, cleaned):
            return cleaned
        if "/" in cleaned and (posix.endswith("/" + cleaned) or fnmatch.fnmatch(posix, f"*/{cleaned}")):
            return cleaned
    return None


def validate_path(
    path: str,
    project_root: Path,
    denied_patterns: list[str],
    restrict_to_project: bool = True,
) -> str | None:
    """Validate one path. Returns a rejection reason, or None when allowed.

    Symlinks are resolved before the containment check.
    """
    resolved = resolve_tool_path(path, project_root)
    root = project_root.resolve()
    try:
        relative = resolved.relative_to(root)
    except ValueError:
        if restrict_to_project:
            return f"Path is outside the project directory: {path}"
        relative = Path(resolved.name)

    matched = matches_denied_pattern(relative, denied_patterns)
    if matched:
        return f"Access to sensitive file denied ({matched}): {path}"
    return None


def validate_tool_paths(
    tool: str,
    arguments: dict[str, Any],
    project_root: Path,
    denied_patterns: list[str],
    restrict_to_project: bool = True,
) -> str | None:
    """Validate every path-bearing argument of a tool call."""
    for key in PATH_ARGUMENTS.get(tool, ()):
        value = arguments.get(key)
        if value is None or value == "":
            continue
        reason = validate_path(str(value), project_root, denied_patterns, restrict_to_project)
        if reason:
            return reason
    return None
