"""Tool dispatcher.

Executes registered tools by id through a fixed pipeline:
1. Look up the tool
2. Decode and validate parameters
3. Check authentication
4. Check the per-tool, per-caller rate limit
5. Invoke the handler with timing
6. Convert any error into a failed result and record statistics
"""

import asyncio
import inspect
import json
import time
from typing import Any, Dict, Iterable, List, Optional, Union

import jsonschema
from pydantic import BaseModel

from sandbox_engine.config import DispatcherSettings, config
from sandbox_engine.exceptions import (
    AuthRequired,
    ErrorType,
    ExecutionTimeout,
    SandboxEngineError,
    ValidationError,
)
from sandbox_engine.logger import logger
from sandbox_engine.schema import ToolInvocation
from sandbox_engine.tool.base import (
    AccessLevel,
    ExecutionContext,
    ToolDefinition,
    ToolExecutionResult,
    ValidationOutcome,
)
from sandbox_engine.tool.rate_limiter import RateLimiter, rate_limit_key
from sandbox_engine.tool.registry import ToolRegistry
from sandbox_engine.tool.stats import ExecutionStatsTable, ToolStats


ADMIN_PERMISSION = "admin"


def decode_params(
    tool: ToolDefinition, params: Union[None, str, Dict[str, Any], BaseModel]
) -> Dict[str, Any]:
    """Bring raw parameters into the shape declared by the tool's schema.

    Accepts a mapping, a JSON object string, a pydantic model or None.
    Declared defaults are filled in before validation.

    Raises:
        ValidationError: If the parameters cannot be decoded or do not
            match the schema.
    """
    if params is None:
        decoded: Dict[str, Any] = {}
    elif isinstance(params, BaseModel):
        decoded = params.model_dump()
    elif isinstance(params, str):
        text = params.strip()
        if not text:
            decoded = {}
        else:
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Parameters are not valid JSON: {e.msg}")
    elif isinstance(params, dict):
        decoded = dict(params)
    else:
        raise ValidationError(
            f"Parameters must be an object, got {type(params).__name__}"
        )

    if not isinstance(decoded, dict):
        raise ValidationError(
            f"Parameters must be a JSON object, got {type(decoded).__name__}"
        )

    spec = tool.schema.parameters or {}
    for name, prop in (spec.get("properties") or {}).items():
        if name not in decoded and isinstance(prop, dict) and "default" in prop:
            decoded[name] = prop["default"]

    try:
        jsonschema.validate(instance=decoded, schema=spec)
    except jsonschema.ValidationError as e:
        location = ".".join(str(part) for part in e.absolute_path)
        message = f"{location}: {e.message}" if location else e.message
        raise ValidationError(f"Invalid parameters for '{tool.id}': {message}")
    except jsonschema.SchemaError as e:
        raise ValidationError(f"Tool '{tool.id}' declares an invalid schema: {e.message}")
    return decoded


class ToolDispatcher:
    """Validated, rate-limited execution of registered tools."""

    def __init__(
        self,
        registry: ToolRegistry,
        rate_limiter: Optional[RateLimiter] = None,
        stats: Optional[ExecutionStatsTable] = None,
        settings: Optional[DispatcherSettings] = None,
    ):
        """Initialize the dispatcher.

        Args:
            registry: Tool catalog
            rate_limiter: Shared limiter (a fresh one is created if omitted)
            stats: Statistics table (a fresh one is created if omitted)
            settings: Rate limit and timeout defaults
        """
        self.registry = registry
        self.settings = settings or config.dispatcher
        self.rate_limiter = rate_limiter or RateLimiter(self.settings.rate_window)
        self.stats = stats or ExecutionStatsTable()

    def _validate(self, tool: ToolDefinition, params: Dict[str, Any]) -> None:
        if tool.validate is None:
            return
        try:
            outcome = tool.validate(params)
        except ValidationError:
            raise
        except Exception as e:
            raise ValidationError(f"Validator for '{tool.id}' failed: {e}")
        if isinstance(outcome, bool):
            outcome = ValidationOutcome(is_valid=outcome)
        if not outcome.is_valid:
            raise ValidationError(outcome.reason or f"Invalid parameters for '{tool.id}'")

    @staticmethod
    def _authorize(tool: ToolDefinition, context: ExecutionContext) -> None:
        metadata = tool.metadata
        if metadata.needs_authentication and not context.authenticated:
            raise AuthRequired(f"Tool '{tool.id}' requires authentication")
        if (
            metadata.access_level == AccessLevel.ADMIN
            and ADMIN_PERMISSION not in context.permissions
        ):
            raise AuthRequired(f"Tool '{tool.id}' requires the admin permission")

    def _check_rate_limit(self, tool: ToolDefinition, context: ExecutionContext) -> None:
        if not tool.metadata.rate_limited:
            return
        max_calls = (
            tool.metadata.max_calls_per_minute
            or self.settings.default_max_calls_per_minute
        )
        context.rate_limit = self.rate_limiter.try_acquire(
            rate_limit_key(tool.id, context.caller), max_calls
        )

    async def _invoke(
        self, tool: ToolDefinition, params: Dict[str, Any], context: ExecutionContext
    ) -> Any:
        result = tool.handler(params, context)
        if not inspect.isawaitable(result):
            return result
        timeout = tool.metadata.timeout or self.settings.default_timeout
        if timeout is None:
            return await result
        try:
            return await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError:
            raise ExecutionTimeout(f"Tool '{tool.id}' timed out after {timeout}s")

    async def execute(
        self,
        tool_id: str,
        params: Union[None, str, Dict[str, Any], BaseModel] = None,
        context: Optional[ExecutionContext] = None,
    ) -> ToolExecutionResult:
        """Execute a tool by id.

        Args:
            tool_id: Registered tool id
            params: Raw parameters
            context: Caller context (an anonymous one is created if omitted)

        Returns:
            ToolExecutionResult; failures are returned, never raised
        """
        context = context or ExecutionContext()
        start_time = time.monotonic()

        tool = self.registry.get(tool_id)
        if tool is None:
            logger.warning(f"Tool not found: {tool_id}")
            available = ", ".join(sorted(self.registry.tool_ids()))
            return ToolExecutionResult(
                success=False,
                error=f"Tool '{tool_id}' is not available. Available tools: {available}",
                error_type=ErrorType.TOOL_NOT_FOUND,
                tool_id=tool_id,
            )

        if tool.metadata.deprecated:
            replacement = tool.metadata.replaced_by
            logger.warning(
                f"Tool '{tool_id}' is deprecated"
                + (f", use '{replacement}' instead" if replacement else "")
            )

        success = False
        try:
            decoded = decode_params(tool, params)
            self._validate(tool, decoded)
            self._authorize(tool, context)
            self._check_rate_limit(tool, context)
            data = await self._invoke(tool, decoded, context)
            success = True
            result = ToolExecutionResult(success=True, data=data, tool_id=tool_id)
        except SandboxEngineError as e:
            logger.warning(f"Tool '{tool_id}' refused or failed ({e.error_type.value}): {e.message}")
            result = ToolExecutionResult(
                success=False, error=e.message, error_type=e.error_type, tool_id=tool_id
            )
        except Exception as e:
            logger.error(f"Tool '{tool_id}' execution failed: {e}")
            result = ToolExecutionResult(
                success=False,
                error=str(e) or type(e).__name__,
                error_type=ErrorType.EXECUTION_ERROR,
                tool_id=tool_id,
            )

        elapsed_ms = (time.monotonic() - start_time) * 1000
        self.stats.record(tool_id, success, elapsed_ms)
        result.execution_time_ms = elapsed_ms
        if success:
            logger.info(f"Tool '{tool_id}' executed successfully in {elapsed_ms:.1f}ms")
        return result

    async def execute_many(
        self,
        invocations: Iterable[ToolInvocation],
        context: Optional[ExecutionContext] = None,
        stop_on_failure: bool = True,
    ) -> List[ToolExecutionResult]:
        """Execute invocations in order, by default stopping at the first failure."""
        results = []
        for invocation in invocations:
            result = await self.execute(invocation.tool_id, invocation.params, context)
            results.append(result)
            if stop_on_failure and not result.success:
                break
        return results

    def get_stats(self, tool_id: Optional[str] = None) -> Union[ToolStats, Dict[str, ToolStats], None]:
        if tool_id is not None:
            return self.stats.get(tool_id)
        return self.stats.all()

    def clear_stats(self, tool_id: Optional[str] = None) -> None:
        self.stats.clear(tool_id)

    @staticmethod
    def format_result(result: ToolExecutionResult) -> str:
        """Render a result for a model or a log line."""
        return f"{result} ({result.execution_time_ms:.0f}ms)"
