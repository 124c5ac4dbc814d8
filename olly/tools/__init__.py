"""Tools package for Olly."""

from olly.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    create_default_registry,
    resolve_tool_path,
)
from olly.tools.glob import GlobTool, GrepTool
from olly.tools.read import ListDirTool, ReadFileTool
from olly.tools.shell import RunCommandTool
from olly.tools.write import EditFileTool, WriteFileTool

BUILTIN_TOOLS: dict[str, type[Tool]] = {
    tool.name: tool
    for tool in (
        ListDirTool,
        ReadFileTool,
        WriteFileTool,
        EditFileTool,
        GlobTool,
        GrepTool,
        RunCommandTool,
    )
}

__all__ = [
    "BUILTIN_TOOLS",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "create_default_registry",
    "resolve_tool_path",
    "ListDirTool",
    "ReadFileTool",
    "WriteFileTool",
    "EditFileTool",
    "GlobTool",
    "GrepTool",
    "RunCommandTool",
]
