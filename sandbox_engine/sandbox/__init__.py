"""
Sandbox access layer

Guarded command execution, session bookkeeping and dev server lifecycle
for projects living inside isolated sandboxes.
"""
from sandbox_engine.sandbox.client import (
    DockerSandboxExecutor,
    RawExecution,
    SandboxExecutor,
)
from sandbox_engine.sandbox.gateway import (
    CommandGateway,
    build_command,
    build_find_files,
    build_list_directory,
    build_read_file,
    build_write_file,
)
from sandbox_engine.sandbox.guard import (
    CommandRule,
    Guard,
    GuardVerdict,
    is_safe_command,
    is_safe_path,
    to_relative,
)
from sandbox_engine.sandbox.lifecycle import (
    HealthReport,
    LifecycleController,
    LifecycleResult,
    LogReadResult,
    RestartGovernor,
    ServerState,
    ServerStatus,
    normalize_url,
)
from sandbox_engine.sandbox.registry import SessionRegistry


__all__ = [
    "CommandGateway",
    "CommandRule",
    "DockerSandboxExecutor",
    "Guard",
    "GuardVerdict",
    "HealthReport",
    "LifecycleController",
    "LifecycleResult",
    "LogReadResult",
    "RawExecution",
    "RestartGovernor",
    "SandboxExecutor",
    "ServerState",
    "ServerStatus",
    "SessionRegistry",
    "build_command",
    "build_find_files",
    "build_list_directory",
    "build_read_file",
    "build_write_file",
    "is_safe_command",
    "is_safe_path",
    "normalize_url",
    "to_relative",
]
