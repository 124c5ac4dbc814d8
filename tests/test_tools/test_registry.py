import asyncio
from pathlib import Path

import pytest

from olly.config import get_config
from olly.exceptions import ToolContractError, ToolExecutionError, ToolNotFoundError
from olly.tools.registry import Tool, ToolRegistry, ToolResult, create_default_registry


class EchoTool(Tool):
    name = "echo"
    description = "Echo text"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self):
        self.seen: list[dict] = []

    async def execute(self, **kwargs):
        self.seen.append(kwargs)
        return ToolResult(output=str(kwargs["text"]))


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 1.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(5.0)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolResult(output="done")


class WrongTypeTool(Tool):
    name = "wrong"
    description = "Returns a dict"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return {"output": "nope"}


class CrashingTool(Tool):
    name = "crash"
    description = "Raises"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        raise OSError("disk on fire")


@pytest.mark.asyncio
async def test_execute_fills_tool_name_and_injects_project_root(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    tool = EchoTool()
    registry.register(tool)

    result = await registry.execute("echo", {"text": "hi"})

    assert result.tool == "echo"
    assert result.output == "hi"
    assert result.success
    assert tool.seen[0]["_project_root"] == tmp_path.resolve()


@pytest.mark.asyncio
async def test_execute_unknown_tool_raises_not_found(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    with pytest.raises(ToolNotFoundError):
        await registry.execute("missing", {})


@pytest.mark.asyncio
async def test_missing_required_argument_raises(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    registry.register(EchoTool())
    with pytest.raises(ToolExecutionError, match="Missing required argument: text"):
        await registry.execute("echo", {})


@pytest.mark.asyncio
async def test_timeout_cancels_tool(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    tool = SlowTool()
    registry.register(tool)

    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await registry.execute("slow", {})
    assert tool.cancelled


@pytest.mark.asyncio
async def test_non_result_return_is_contract_error(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    registry.register(WrongTypeTool())

    with pytest.raises(ToolContractError) as excinfo:
        await registry.execute("wrong", {})
    assert excinfo.value.detail == "expected ToolResult, got dict"


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_execution_error(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    registry.register(CrashingTool())

    with pytest.raises(ToolExecutionError, match="disk on fire"):
        await registry.execute("crash", {})


def test_tool_result_failure_always_has_message():
    assert ToolResult(error="").error == "Tool execution failed"
    assert ToolResult(output="partial", error="  ").error == "partial"
    assert not ToolResult.failure("bad").success


def test_definitions_and_listing(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    registry.register(EchoTool())
    registry.register(CrashingTool())

    assert registry.list_tools() == ["echo", "crash"]
    assert [d.name for d in registry.get_definitions(["crash"])] == ["crash"]
    assert registry.get_definitions()[0].parameters["required"] == ["text"]

    registry.unregister("crash")
    assert not registry.has_tool("crash")


def test_register_requires_name(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    tool = EchoTool()
    tool.name = ""
    with pytest.raises(ValueError):
        registry.register(tool)


def test_default_registry_uses_enabled_builtins(tmp_path: Path):
    registry = create_default_registry(tmp_path)
    assert registry.list_tools() == get_config().tools.enabled
    assert registry.project_root == tmp_path.resolve()

    limited = create_default_registry(tmp_path, enabled=["read_file", "nope"])
    assert limited.list_tools() == ["read_file"]
