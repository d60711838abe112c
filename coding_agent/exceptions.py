"""Custom exceptions for Coding Agent."""


class CodingAgentError(Exception):
    """Base exception for Coding Agent."""

    pass


class ConfigurationError(CodingAgentError):
    """Configuration-related errors."""

    pass


class ToolError(CodingAgentError):
    """Tool-level errors. Never fatal to an exchange."""

    pass


class DecodeError(ToolError):
    """Tool arguments could not be decoded into the tool's parameter model."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"failed to decode arguments for {tool_name}: {message}")
        self.tool_name = tool_name


class UnknownToolError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"unknown function call: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class PatchError(ToolError):
    """Unified diff could not be turned into a file edit."""

    pass


class PatchParseError(PatchError):
    """Diff text is not a well-formed unified diff."""

    def __init__(self, message: str, line_number: int | None = None):
        if line_number is not None:
            message = f"{message} (line {line_number})"
        super().__init__(f"failed to parse patch: {message}")
        self.line_number = line_number


class EmptyPatchError(PatchError):
    """Diff text contains no file patches."""

    def __init__(self) -> None:
        super().__init__("patch is empty")


class PatchApplyError(PatchError):
    """Hunk context does not match the current file content."""

    def __init__(
        self,
        message: str,
        *,
        hunk_header: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ):
        super().__init__(f"failed to apply patch: {message}")
        self.hunk_header = hunk_header
        self.expected = expected
        self.actual = actual


class BackendError(CodingAgentError):
    """Model backend call failed."""

    pass


class BackendAPIError(BackendError):
    """Model backend answered with an error status (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(CodingAgentError):
    """Conversation store failed to read or write turns."""

    pass


class SessionError(CodingAgentError):
    """Session-related errors."""

    pass


class ToolLoopExceededError(CodingAgentError):
    """Model kept requesting tools past the configured round limit."""

    def __init__(self, max_rounds: int):
        super().__init__(
            f"model requested tools for more than {max_rounds} consecutive rounds"
        )
        self.max_rounds = max_rounds


class ExchangeCancelledError(CodingAgentError):
    """Exchange was aborted before the model answered."""

    def __init__(self, message: str = "exchange cancelled"):
        super().__init__(message)
