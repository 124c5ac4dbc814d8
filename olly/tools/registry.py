"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, model_validator

from olly.cancellation import cancel_task
from olly.exceptions import (
    ToolContractError,
    ToolExecutionError,
    ToolNotFoundError,
)
from olly.llm import ToolDefinition
from olly.logging import get_logger

log = get_logger(__name__)

EXCLUDED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".olly"}


def resolve_tool_path(path: str | Path, project_root: Path | str | None = None) -> Path:
    """Resolve a tool-supplied path, anchoring relative paths to the project root."""
    requested = Path(str(path or ".")).expanduser()
    if requested.is_absolute():
        return requested.resolve()
    anchor = Path(project_root).expanduser().resolve() if project_root is not None else Path.cwd().resolve()
    return (anchor / requested).resolve()


def is_excluded_path(relative: Path) -> bool:
    """Return whether any path component is a vendored/build directory."""
    return any(part in EXCLUDED_DIRS for part in relative.parts)


class ToolResult(BaseModel):
    """Result from tool execution (an observation once fed back to the model)."""

    tool: str = ""
    output: str = ""
    error: str | None = None
    call_id: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always carry a readable error message."""
        if self.error is not None and not self.error.strip():
            self.error = self.output.strip() or "Tool execution failed"
        return self

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: str, output: str = "") -> "ToolResult":
        return cls(output=output, error=error)


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments, plus ``_project_root``

        Returns:
            ToolResult with output or error
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolRegistry:
    """Registry for managing available tools and executing them by name."""

    def __init__(self, project_root: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._project_root = Path.cwd()
        self.set_project_root(project_root or Path.cwd())

    def set_project_root(self, project_root: Path | str) -> None:
        """Set the directory tools resolve relative paths against."""
        self._project_root = Path(project_root).expanduser().resolve()

    @property
    def project_root(self) -> Path:
        return self._project_root

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self, names: list[str] | None = None) -> list[ToolDefinition]:
        """Get tool definitions for the LLM, optionally restricted to ``names``."""
        allowed = set(names) if names is not None else None
        return [
            tool.get_definition()
            for tool in self._tools.values()
            if allowed is None or tool.name in allowed
        ]

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name.

        A started tool runs to completion or timeout; it is not pre-empted by
        the agent's abort signal.

        Returns:
            ToolResult from execution, with ``tool`` filled in

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails or times out
            ToolContractError if the tool returns something other than a ToolResult
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[Any] | None = None
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = float(getattr(tool, "timeout_seconds", 30.0) or 30.0)
            timeout_override = arguments.get("timeout")
            if isinstance(timeout_override, (int, float)) and not isinstance(timeout_override, bool):
                timeout_seconds = float(timeout_override)
            timeout_seconds = max(1.0, timeout_seconds)

            execute_task = asyncio.create_task(
                tool.execute(**arguments, _project_root=self.project_root)
            )
            done, _ = await asyncio.wait({execute_task}, timeout=timeout_seconds)

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolContractError(
                        name,
                        f"expected ToolResult, got {type(result).__name__}",
                    )
                log.info("Tool executed", tool=name, success=result.success)
                return result.model_copy(update={"tool": name})

            await cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await cancel_task(execute_task)
            raise
        except (ToolExecutionError, ToolContractError):
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))


def create_default_registry(
    project_root: Path | str | None = None,
    enabled: list[str] | None = None,
) -> ToolRegistry:
    """Build a registry with the builtin tools enabled in config."""
    from olly.config import get_config
    from olly.tools import BUILTIN_TOOLS

    cfg = get_config()
    registry = ToolRegistry(project_root or cfg.resolved_project_root())
    names = enabled if enabled is not None else cfg.tools.enabled
    for name in names:
        tool_cls = BUILTIN_TOOLS.get(name)
        if tool_cls is None:
            log.warning("Unknown builtin tool in config", tool=name)
            continue
        registry.register(tool_cls())
    return registry
