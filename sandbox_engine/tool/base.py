import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field

from sandbox_engine.exceptions import ErrorType
from sandbox_engine.schema import SandboxSession


class ToolCategory(str, Enum):
    FILESYSTEM = "filesystem"
    PROCESS = "process"
    DOCKER = "docker"
    NETWORK = "network"
    PROJECT = "project"
    UTILITY = "utility"
    SYSTEM = "system"
    AI = "ai"


CATEGORY_METADATA: Dict[ToolCategory, Dict[str, Any]] = {
    ToolCategory.FILESYSTEM: {
        "name": "Filesystem",
        "description": "Read, write, list and search files in the workspace",
        "priority": 1,
    },
    ToolCategory.PROCESS: {
        "name": "Process",
        "description": "Start, stop and inspect the dev server",
        "priority": 2,
    },
    ToolCategory.PROJECT: {
        "name": "Project",
        "description": "Project structure and metadata",
        "priority": 3,
    },
    ToolCategory.DOCKER: {
        "name": "Docker",
        "description": "Container-level operations",
        "priority": 4,
    },
    ToolCategory.NETWORK: {
        "name": "Network",
        "description": "Health checks and connectivity",
        "priority": 5,
    },
    ToolCategory.UTILITY: {
        "name": "Utility",
        "description": "General helpers",
        "priority": 6,
    },
    ToolCategory.SYSTEM: {
        "name": "System",
        "description": "Engine administration",
        "priority": 7,
    },
    ToolCategory.AI: {
        "name": "AI",
        "description": "Model-backed helpers",
        "priority": 8,
    },
}


class AccessLevel(str, Enum):
    PUBLIC = "public"
    RESTRICTED = "restricted"
    ADMIN = "admin"


class ToolSchema(BaseModel):
    """Name, description and JSON-schema parameter spec of a tool."""

    name: str
    description: str
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_param(self) -> Dict:
        """Convert tool to function call format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolMetadata(BaseModel):
    category: ToolCategory = ToolCategory.UTILITY
    access_level: AccessLevel = AccessLevel.PUBLIC
    requires_auth: bool = False
    rate_limited: bool = False
    max_calls_per_minute: Optional[int] = None
    timeout: Optional[float] = Field(None, description="Handler timeout in seconds")
    version: str = "1.0.0"
    tags: List[str] = Field(default_factory=list)
    deprecated: bool = False
    replaced_by: Optional[str] = None

    @property
    def needs_authentication(self) -> bool:
        return self.requires_auth or self.access_level != AccessLevel.PUBLIC


class ValidationOutcome(BaseModel):
    is_valid: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationOutcome":
        return cls(is_valid=True)

    @classmethod
    def fail(cls, reason: str) -> "ValidationOutcome":
        return cls(is_valid=False, reason=reason)


class RateLimitState(BaseModel):
    limit: int
    remaining: int
    reset_in: float


class ExecutionContext(BaseModel):
    """Per-invocation caller context."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    authenticated: bool = False
    permissions: Set[str] = Field(default_factory=set)
    session: Optional[SandboxSession] = Field(
        None, description="Sandbox session the handler operates on"
    )
    rate_limit: Optional[RateLimitState] = None

    @property
    def caller(self) -> str:
        return self.user_id or "anonymous"


Handler = Callable[[Dict[str, Any], ExecutionContext], Union[Any, Awaitable[Any]]]
Validator = Callable[[Dict[str, Any]], ValidationOutcome]


@dataclass(frozen=True)
class ToolDefinition:
    """A callable capability registered with the tool registry."""

    id: str
    schema: ToolSchema
    handler: Handler
    metadata: ToolMetadata = field(default_factory=ToolMetadata)
    validate: Optional[Validator] = None

    def to_param(self) -> Dict:
        param = self.schema.to_param()
        param["function"]["name"] = self.id
        return param


class ToolExecutionResult(BaseModel):
    """Outcome of one dispatcher call."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    execution_time_ms: float = 0.0
    tool_id: str

    def __bool__(self) -> bool:
        return self.success

    def __str__(self) -> str:
        if not self.success:
            return f"❌ {self.tool_id} failed: {self.error}"
        if self.data is None:
            return f"✅ {self.tool_id} completed successfully"
        if isinstance(self.data, str):
            return self.data
        return json.dumps(self.data, ensure_ascii=False, indent=2, default=str)
