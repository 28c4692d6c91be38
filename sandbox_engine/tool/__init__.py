from typing import Optional

from sandbox_engine.sandbox.gateway import CommandGateway
from sandbox_engine.sandbox.lifecycle import LifecycleController
from sandbox_engine.tool.base import (
    AccessLevel,
    CATEGORY_METADATA,
    ExecutionContext,
    RateLimitState,
    ToolCategory,
    ToolDefinition,
    ToolExecutionResult,
    ToolMetadata,
    ToolSchema,
    ValidationOutcome,
)
from sandbox_engine.tool.dev_server import create_dev_server_tools
from sandbox_engine.tool.dispatcher import ToolDispatcher, decode_params
from sandbox_engine.tool.rate_limiter import RateLimiter, rate_limit_key
from sandbox_engine.tool.registry import ToolRegistry
from sandbox_engine.tool.stats import ExecutionStatsTable, ToolStats
from sandbox_engine.tool.workspace import create_workspace_tools


def build_default_registry(
    gateway: CommandGateway,
    controller: Optional[LifecycleController] = None,
) -> ToolRegistry:
    """Registry holding the workspace tools and, with a controller, the dev server tools."""
    registry = ToolRegistry()
    registry.register_tools(create_workspace_tools(gateway))
    if controller is not None:
        registry.register_tools(create_dev_server_tools(controller))
    return registry


__all__ = [
    "AccessLevel",
    "CATEGORY_METADATA",
    "ExecutionContext",
    "ExecutionStatsTable",
    "RateLimitState",
    "RateLimiter",
    "ToolCategory",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolExecutionResult",
    "ToolMetadata",
    "ToolRegistry",
    "ToolSchema",
    "ToolStats",
    "ValidationOutcome",
    "build_default_registry",
    "create_dev_server_tools",
    "create_workspace_tools",
    "decode_params",
    "rate_limit_key",
]
