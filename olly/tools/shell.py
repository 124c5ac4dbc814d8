"""run_command tool for executing shell commands."""

import asyncio
import os
from typing import Any

from olly.config import get_config
from olly.logging import get_logger
from olly.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)


class RunCommandTool(Tool):
    """Execute shell commands."""

    name = "run_command"
    description = (
        "Execute a shell command in the project and return stdout, stderr and exit code. "
        "Use with caution."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "cwd": {
                "type": "string",
                "description": "Working directory for the command (default: project root)",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self):
        self.config = get_config()
        self.timeout_seconds = float(self.config.tools.shell_timeout or 60)

    async def execute(
        self,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            cwd: Optional working directory
            timeout: Optional timeout override

        Returns:
            ToolResult with combined output; non-zero exit codes are failures
        """
        if not str(command or "").strip():
            return ToolResult.failure("Command is empty")

        if timeout is None:
            timeout = self.config.tools.shell_timeout
        timeout = max(1, int(timeout))

        workdir = resolve_tool_path(cwd or ".", kwargs.get("_project_root"))
        if not workdir.is_dir():
            return ToolResult.failure(f"Working directory not found: {cwd}")

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        try:
            log.info("Executing shell command", command=command, cwd=str(workdir), timeout=timeout)

            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
                env=env,
            )
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return ToolResult.failure(f"Command timed out after {timeout}s")
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise

            stdout_text = stdout.decode("utf-8", errors="replace").strip()
            stderr_text = stderr.decode("utf-8", errors="replace").strip()

            output = stdout_text
            if stderr_text:
                output += f"\n[stderr] {stderr_text}"

            max_length = self.config.tools.max_output_chars
            if len(output) > max_length:
                output = output[:max_length] + f"\n... [truncated, {len(output)} total chars]"
            output = output.strip() or "[no output]"

            if process.returncode != 0:
                return ToolResult(
                    output=output,
                    error=f"Command exited with code {process.returncode}",
                )
            return ToolResult(output=output)

        except Exception as e:
            log.error("Shell command failed", command=command, error=str(e))
            return ToolResult.failure(str(e))
