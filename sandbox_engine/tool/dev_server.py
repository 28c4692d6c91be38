"""Dev server tools built on the lifecycle controller."""

from typing import Any, Dict, List

from sandbox_engine.exceptions import ErrorType, ToolError
from sandbox_engine.sandbox.lifecycle import LifecycleController, LifecycleResult
from sandbox_engine.tool.base import (
    ExecutionContext,
    ToolCategory,
    ToolDefinition,
    ToolMetadata,
    ToolSchema,
)
from sandbox_engine.tool.workspace import require_session


NO_PARAMS = {"type": "object", "properties": {}, "additionalProperties": False}


def _lifecycle_output(result: LifecycleResult) -> Dict[str, Any]:
    if not result.success:
        raise ToolError(
            result.error or result.message,
            error_type=result.error_type or ErrorType.EXECUTION_ERROR,
        )
    return {
        "message": f"✅ {result.message}",
        "url": result.url,
        "pid": result.pid,
        "restart_count": result.restart_count,
    }


def create_dev_server_tools(controller: LifecycleController) -> List[ToolDefinition]:
    async def start_dev_server(params: Dict[str, Any], context: ExecutionContext):
        return _lifecycle_output(await controller.start(require_session(context)))

    async def stop_dev_server(params: Dict[str, Any], context: ExecutionContext):
        return _lifecycle_output(await controller.stop(require_session(context)))

    async def restart_dev_server(params: Dict[str, Any], context: ExecutionContext):
        return _lifecycle_output(
            await controller.restart(require_session(context), params.get("reason"))
        )

    async def dev_server_status(params: Dict[str, Any], context: ExecutionContext):
        session = require_session(context)
        status = await controller.check_status(session)
        data = status.model_dump()
        data["state"] = controller.state(session.sandbox_id).value
        return data

    async def read_dev_logs(params: Dict[str, Any], context: ExecutionContext):
        result = await controller.read_logs(
            require_session(context), params["lines"], params.get("keyword")
        )
        if not result.success:
            raise ToolError(result.error or "Failed to read logs", error_type=result.error_type)
        return {"lines": result.lines, "count": len(result.lines)}

    async def search_dev_logs(params: Dict[str, Any], context: ExecutionContext):
        result = await controller.search_logs(
            require_session(context), params["keyword"], params["lines"]
        )
        if not result.success:
            raise ToolError(result.error or "Failed to search logs", error_type=result.error_type)
        return {"keyword": params["keyword"], "matches": result.lines, "count": len(result.lines)}

    async def check_service_health(params: Dict[str, Any], context: ExecutionContext):
        report = await controller.check_health(require_session(context), params.get("port"))
        return report.model_dump()

    process = ToolMetadata(category=ToolCategory.PROCESS, tags=["dev-server"])

    return [
        ToolDefinition(
            id="start_dev_server",
            schema=ToolSchema(
                name="start_dev_server",
                description="Start the project's dev server if it is not already running.",
                parameters=NO_PARAMS,
            ),
            handler=start_dev_server,
            metadata=process,
        ),
        ToolDefinition(
            id="stop_dev_server",
            schema=ToolSchema(
                name="stop_dev_server",
                description="Stop the project's dev server.",
                parameters=NO_PARAMS,
            ),
            handler=stop_dev_server,
            metadata=process,
        ),
        ToolDefinition(
            id="restart_dev_server",
            schema=ToolSchema(
                name="restart_dev_server",
                description=(
                    "Restart the dev server. Refused while the restart limit is "
                    "reached; wait for the cooldown before trying again."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "reason": {"type": "string", "description": "Why a restart is needed"}
                    },
                    "additionalProperties": False,
                },
            ),
            handler=restart_dev_server,
            metadata=ToolMetadata(
                category=ToolCategory.PROCESS,
                rate_limited=True,
                max_calls_per_minute=10,
                tags=["dev-server"],
            ),
        ),
        ToolDefinition(
            id="dev_server_status",
            schema=ToolSchema(
                name="dev_server_status",
                description="Report whether the dev server runs, with PID, port and URL.",
                parameters=NO_PARAMS,
            ),
            handler=dev_server_status,
            metadata=process,
        ),
        ToolDefinition(
            id="read_dev_logs",
            schema=ToolSchema(
                name="read_dev_logs",
                description="Read the last lines of the dev server log.",
                parameters={
                    "type": "object",
                    "properties": {
                        "lines": {
                            "type": "integer",
                            "minimum": 1,
                            "maximum": 10000,
                            "default": 200,
                        },
                        "keyword": {"type": "string"},
                    },
                    "additionalProperties": False,
                },
            ),
            handler=read_dev_logs,
            metadata=process,
        ),
        ToolDefinition(
            id="search_dev_logs",
            schema=ToolSchema(
                name="search_dev_logs",
                description="Search recent dev server log lines for a keyword (case-insensitive).",
                parameters={
                    "type": "object",
                    "properties": {
                        "keyword": {"type": "string", "default": "error", "minLength": 1},
                        "lines": {
                            "type": "integer",
                            "minimum": 1,
                            "maximum": 10000,
                            "default": 1000,
                        },
                    },
                    "additionalProperties": False,
                },
            ),
            handler=search_dev_logs,
            metadata=process,
        ),
        ToolDefinition(
            id="check_service_health",
            schema=ToolSchema(
                name="check_service_health",
                description="HTTP health probe of the dev server from inside the sandbox.",
                parameters={
                    "type": "object",
                    "properties": {
                        "port": {"type": "integer", "minimum": 1, "maximum": 65535}
                    },
                    "additionalProperties": False,
                },
            ),
            handler=check_service_health,
            metadata=ToolMetadata(category=ToolCategory.NETWORK, tags=["dev-server"]),
        ),
    ]
