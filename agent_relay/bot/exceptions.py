"""Relay error taxonomy."""

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay operations."""


class AuthenticationFailure(RelayError):
    """Raised when the signed-URL credential exchange is rejected or errors."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UpstreamConnectTimeout(RelayError):
    """Raised when the upstream connection does not open within the timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Upstream connection timed out after {timeout:g}s")


class UpstreamTransportError(RelayError):
    """Raised when the upstream connection fails to open or drops after opening."""


class MalformedMessage(RelayError):
    """Raised when a payload from either side is not valid JSON or lacks a type."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"[{source}] {message}")


class ToolResolutionFailure(RelayError):
    """Raised when no handler is registered for a requested tool."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"No handler found for tool: {tool_name}")


class ToolExecutionFailure(RelayError):
    """Raised by tool handlers when the underlying action fails."""


class DownstreamSendFailure(RelayError):
    """Raised when a send is attempted on a closed or errored downstream connection."""
