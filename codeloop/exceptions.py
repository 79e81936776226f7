"""Custom exceptions for codeloop."""


class CodeLoopError(Exception):
    """Base exception for codeloop."""

    pass


class ConfigurationError(CodeLoopError):
    """Configuration-related errors."""

    pass


class LLMError(CodeLoopError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(LLMError):
    """Provider stream violated the event contract. Always terminal for the turn."""

    pass


class ProviderTimeoutError(LLMError):
    """Provider call exceeded its per-call timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Provider call timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ToolError(CodeLoopError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.detail = message


class ToolTimeoutError(ToolExecutionError):
    """Tool did not finish within its timeout."""

    def __init__(self, tool_name: str, timeout_seconds: float):
        super().__init__(tool_name, f"Execution timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ValidationError(ToolError):
    """Tool arguments failed validation."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for '{tool_name}': {message}")
        self.tool_name = tool_name
        self.detail = message


class ApprovalError(CodeLoopError):
    """Approval gate misuse (e.g. a second outstanding wait)."""

    pass


class RecoveryError(CodeLoopError):
    """Recovery journal errors."""

    pass
