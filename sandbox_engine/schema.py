import posixpath
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sandbox_engine.exceptions import ErrorType


class SandboxStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class SandboxSession(BaseModel):
    """A project attached to a sandbox.

    Only ``status`` may change once the session exists.
    """

    model_config = ConfigDict(validate_assignment=True)

    sandbox_id: str = Field(..., frozen=True, description="Container or sandbox id")
    workspace_root: str = Field(
        ..., frozen=True, description="Only directory the guard lets tools touch"
    )
    status: SandboxStatus = Field(SandboxStatus.RUNNING)

    @field_validator("sandbox_id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("sandbox_id must not be empty")
        return value

    @field_validator("workspace_root")
    @classmethod
    def _normalise_root(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("workspace_root must be an absolute path")
        if ".." in value.split("/"):
            raise ValueError("workspace_root must not contain '..'")
        return posixpath.normpath(value)

    @property
    def is_running(self) -> bool:
        return self.status == SandboxStatus.RUNNING


class ExecutionRequest(BaseModel):
    """An argv-style command bound for one sandbox."""

    model_config = ConfigDict(frozen=True)

    sandbox_id: str
    command: List[str] = Field(..., min_length=1)
    working_directory: str

    @property
    def command_text(self) -> str:
        return " ".join(self.command)


class ExecutionResult(BaseModel):
    """Normalised outcome of a sandboxed command."""

    model_config = ConfigDict(frozen=True)

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None

    @classmethod
    def failure(
        cls, error_type: ErrorType, message: str, **kwargs: Any
    ) -> "ExecutionResult":
        return cls(success=False, error=message, error_type=error_type, **kwargs)

    @property
    def output(self) -> str:
        return self.stdout if self.stdout else self.stderr

    def __str__(self) -> str:
        if self.success:
            return self.output
        return f"Error: {self.error or self.stderr}"


class Decision(str, Enum):
    CONTINUE_TOOLS = "continue_tools"
    RESPOND_TO_USER = "respond_to_user"
    NEED_INPUT = "need_input"


class ToolInvocation(BaseModel):
    tool_id: str
    params: Dict[str, Any] = Field(default_factory=dict)


class DecisionRecord(BaseModel):
    """One verdict from the decide capability."""

    reasoning: str = ""
    decision: Decision
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    retry_count: int = 0
    last_error: Optional[str] = None
    tool_calls: List[ToolInvocation] = Field(default_factory=list)
