"""Workspace file tools built on the command gateway."""

import json
import posixpath
from typing import Any, Dict, List

from sandbox_engine.exceptions import ErrorType, ToolError
from sandbox_engine.sandbox.gateway import CommandGateway
from sandbox_engine.sandbox.guard import to_relative
from sandbox_engine.schema import ExecutionResult, SandboxSession
from sandbox_engine.tool.base import (
    ExecutionContext,
    ToolCategory,
    ToolDefinition,
    ToolMetadata,
    ToolSchema,
    ValidationOutcome,
)


def require_session(context: ExecutionContext) -> SandboxSession:
    if context.session is None:
        raise ToolError("No sandbox session attached to this call")
    return context.session


def unwrap(result: ExecutionResult) -> str:
    """Return stdout of a successful result or raise ToolError."""
    if not result.success:
        raise ToolError(
            result.error or "Sandbox command failed",
            error_type=result.error_type or ErrorType.EXECUTION_ERROR,
        )
    return result.stdout


def path_validator(*keys: str):
    """Cheap pre-check of path parameters; the gateway re-validates."""

    def _validate(params: Dict[str, Any]) -> ValidationOutcome:
        for key in keys:
            value = params.get(key)
            if value is None:
                continue
            if not isinstance(value, str) or not value.strip():
                return ValidationOutcome.fail(f"'{key}' must be a non-empty string")
            if ".." in value or value.startswith("~") or "\x00" in value:
                return ValidationOutcome.fail(f"Unsafe path in '{key}': {value}")
        return ValidationOutcome.ok()

    return _validate


def detect_framework(package: Dict[str, Any]) -> str:
    dependencies = {
        **(package.get("dependencies") or {}),
        **(package.get("devDependencies") or {}),
    }
    if "next" in dependencies:
        return "Next.js"
    if "vite" in dependencies:
        return "Vite"
    if "react" in dependencies:
        return "React"
    if "vue" in dependencies:
        return "Vue"
    return "unknown"


def create_workspace_tools(gateway: CommandGateway) -> List[ToolDefinition]:
    """Tool definitions for reading and changing files in the workspace."""

    async def read_file(params: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        session = require_session(context)
        content = unwrap(await gateway.read_file(session, params["path"]))
        return {"path": params["path"], "content": content}

    async def write_file(params: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        session = require_session(context)
        unwrap(await gateway.write_file(session, params["path"], params["content"]))
        return {
            "path": params["path"],
            "bytes_written": len(params["content"].encode("utf-8")),
            "message": f"✅ File {params['path']} written successfully",
        }

    async def list_directory(
        params: Dict[str, Any], context: ExecutionContext
    ) -> Dict[str, Any]:
        session = require_session(context)
        output = unwrap(await gateway.list_directory(session, params["path"]))
        entries = []
        for line in output.splitlines():
            name = line.strip()
            if not name:
                continue
            if name.endswith("/"):
                entries.append({"name": name.rstrip("/"), "type": "directory"})
            else:
                entries.append({"name": name, "type": "file"})
        return {"path": params["path"], "entries": entries}

    async def find_files(params: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        session = require_session(context)
        output = unwrap(
            await gateway.find_files(
                session, params["pattern"], params["path"], params.get("max_depth")
            )
        )
        files = sorted(
            to_relative(line.strip(), session.workspace_root)
            for line in output.splitlines()
            if line.strip()
        )
        return {"pattern": params["pattern"], "files": files, "count": len(files)}

    async def get_project_info(
        params: Dict[str, Any], context: ExecutionContext
    ) -> Dict[str, Any]:
        session = require_session(context)
        manifest = posixpath.join(params["path"], "package.json")
        raw = unwrap(await gateway.read_file(session, manifest))
        try:
            package = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolError(f"package.json is not valid JSON: {e.msg}")
        scripts = package.get("scripts") or {}
        return {
            "name": package.get("name", posixpath.basename(session.workspace_root)),
            "version": package.get("version"),
            "framework": detect_framework(package),
            "scripts": scripts,
            "has_dev_script": "dev" in scripts,
            "dependency_count": len(package.get("dependencies") or {}),
            "dev_dependency_count": len(package.get("devDependencies") or {}),
        }

    filesystem = ToolMetadata(category=ToolCategory.FILESYSTEM, tags=["workspace"])

    return [
        ToolDefinition(
            id="read_file",
            schema=ToolSchema(
                name="read_file",
                description="Read a text file from the project workspace.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "File path relative to the workspace root",
                        }
                    },
                    "required": ["path"],
                    "additionalProperties": False,
                },
            ),
            handler=read_file,
            metadata=filesystem,
            validate=path_validator("path"),
        ),
        ToolDefinition(
            id="write_file",
            schema=ToolSchema(
                name="write_file",
                description="Create or overwrite a file in the project workspace.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "File path relative to the workspace root",
                        },
                        "content": {
                            "type": "string",
                            "description": "Complete new file content",
                        },
                    },
                    "required": ["path", "content"],
                    "additionalProperties": False,
                },
            ),
            handler=write_file,
            metadata=ToolMetadata(
                category=ToolCategory.FILESYSTEM,
                rate_limited=True,
                max_calls_per_minute=30,
                tags=["workspace", "write"],
            ),
            validate=path_validator("path"),
        ),
        ToolDefinition(
            id="list_directory",
            schema=ToolSchema(
                name="list_directory",
                description="List files and directories in a workspace directory.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "Directory relative to the workspace root",
                            "default": ".",
                        }
                    },
                    "additionalProperties": False,
                },
            ),
            handler=list_directory,
            metadata=filesystem,
            validate=path_validator("path"),
        ),
        ToolDefinition(
            id="find_files",
            schema=ToolSchema(
                name="find_files",
                description=(
                    "Find files by name pattern (shell glob such as '*.tsx'), "
                    "skipping node_modules and .git."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "pattern": {"type": "string", "description": "File name glob"},
                        "path": {
                            "type": "string",
                            "description": "Directory to search from",
                            "default": ".",
                        },
                        "max_depth": {"type": "integer", "minimum": 1},
                    },
                    "required": ["pattern"],
                    "additionalProperties": False,
                },
            ),
            handler=find_files,
            metadata=filesystem,
            validate=path_validator("path"),
        ),
        ToolDefinition(
            id="get_project_info",
            schema=ToolSchema(
                name="get_project_info",
                description="Summarise package.json: name, version, framework and scripts.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "Directory containing package.json",
                            "default": ".",
                        }
                    },
                    "additionalProperties": False,
                },
            ),
            handler=get_project_info,
            metadata=ToolMetadata(category=ToolCategory.PROJECT, tags=["workspace"]),
            validate=path_validator("path"),
        ),
    ]
