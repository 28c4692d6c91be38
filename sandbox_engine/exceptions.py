from enum import Enum
from typing import Optional


class ErrorType(str, Enum):
    """Failure categories surfaced in result values."""

    SECURITY_VIOLATION = "security_violation"
    EXECUTION_TIMEOUT = "execution_timeout"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    VALIDATION_ERROR = "validation_error"
    AUTH_REQUIRED = "auth_required"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TOOL_NOT_FOUND = "tool_not_found"
    PARSING_ERROR = "parsing_error"
    EXECUTION_ERROR = "execution_error"


class SandboxEngineError(Exception):
    """Base exception for all sandbox engine errors"""

    error_type: ErrorType = ErrorType.EXECUTION_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ToolError(SandboxEngineError):
    """Raised when a tool encounters an error."""

    def __init__(self, message: str, error_type: Optional[ErrorType] = None):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type


class SecurityViolation(SandboxEngineError):
    """A path or command was rejected by the guard. Never retried."""

    error_type = ErrorType.SECURITY_VIOLATION


class ExecutionTimeout(SandboxEngineError):
    """A sandbox call exceeded its deadline."""

    error_type = ErrorType.EXECUTION_TIMEOUT


class CircuitBreakerOpen(SandboxEngineError):
    """A restart was refused by the restart governor."""

    error_type = ErrorType.CIRCUIT_BREAKER_OPEN

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class ValidationError(SandboxEngineError):
    """Tool parameters failed validation."""

    error_type = ErrorType.VALIDATION_ERROR


class AuthRequired(SandboxEngineError):
    error_type = ErrorType.AUTH_REQUIRED


class RateLimitExceeded(SandboxEngineError):
    """Raised when rate limit is exceeded."""

    error_type = ErrorType.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class ToolNotFound(SandboxEngineError):
    error_type = ErrorType.TOOL_NOT_FOUND

    def __init__(self, tool_id: str):
        super().__init__(f"Tool '{tool_id}' is not registered")
        self.tool_id = tool_id


class ParsingError(SandboxEngineError):
    """The decide capability returned something that is not a decision."""

    error_type = ErrorType.PARSING_ERROR
