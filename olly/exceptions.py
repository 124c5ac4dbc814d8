"""Custom exceptions for Olly."""


class OllyError(Exception):
    """Base exception for Olly."""

    pass


class ConfigurationError(OllyError):
    """Configuration-related errors."""

    pass


class LLMError(OllyError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (bad status, transport failure)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(OllyError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.detail = message


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolContractError(ToolError):
    """Executor broke its contract (e.g. returned something other than a ToolResult)."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' violated executor contract: {message}")
        self.tool_name = tool_name
        self.detail = message


class SessionError(OllyError):
    """Session-related errors."""

    pass


class SessionBusyError(SessionError):
    """A turn is already running for this session."""

    def __init__(self, session_id: str):
        super().__init__(f"Session is busy: {session_id}")
        self.session_id = session_id
