"""
Command execution gateway.

Every sandbox call goes through ``CommandGateway.execute``: the request
is checked by the guard, handed to the raw execute primitive under a
timeout, and normalised into an ``ExecutionResult``. Failures of any
kind come back as results, never as exceptions.
"""

import asyncio
import base64
import posixpath
import shlex
import time
from typing import List, Optional

from sandbox_engine.config import GatewaySettings, config
from sandbox_engine.exceptions import ErrorType, SecurityViolation
from sandbox_engine.logger import logger
from sandbox_engine.sandbox.client import RawExecution, SandboxExecutor
from sandbox_engine.sandbox.guard import Guard, get_guard
from sandbox_engine.schema import ExecutionRequest, ExecutionResult, SandboxSession


FIND_EXCLUDED_PATHS = ["*/node_modules/*", "*/.git/*"]

# 48 KiB of content encodes to 64 KiB, well below the per-argument limit.
WRITE_CHUNK_BYTES = 48 * 1024


def build_command(
    session: SandboxSession,
    command: List[str],
    working_directory: str = ".",
    guard: Optional[Guard] = None,
) -> ExecutionRequest:
    """Bind a command to a session, resolving the working directory."""
    guard = guard or get_guard()
    cwd = guard.resolve_path(working_directory, session.workspace_root)
    return ExecutionRequest(
        sandbox_id=session.sandbox_id, command=command, working_directory=cwd
    )


def build_read_file(
    session: SandboxSession, path: str, guard: Optional[Guard] = None
) -> ExecutionRequest:
    guard = guard or get_guard()
    target = guard.resolve_path(path, session.workspace_root)
    return ExecutionRequest(
        sandbox_id=session.sandbox_id,
        command=["cat", target],
        working_directory=session.workspace_root,
    )


def build_write_file(
    session: SandboxSession,
    path: str,
    content: str,
    guard: Optional[Guard] = None,
    chunk_size: int = WRITE_CHUNK_BYTES,
) -> List[ExecutionRequest]:
    """Write ``content`` to ``path`` through shell redirection.

    The content travels base64-encoded so it cannot alter the shell
    command or trip the command denylist. Payloads larger than
    ``chunk_size`` bytes are split into one request per chunk; the first
    truncates the target and the rest append to it.
    """
    guard = guard or get_guard()
    target = guard.resolve_path(path, session.workspace_root)
    parent = posixpath.dirname(target)
    # The derived parent directory gets its own check.
    guard.resolve_path(parent, session.workspace_root)

    # Chunks must hold whole base64 groups to decode independently.
    chunk_size = max(3, chunk_size - chunk_size % 3)
    data = content.encode("utf-8")
    chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)] or [b""]

    requests = []
    for index, chunk in enumerate(chunks):
        encoded = base64.b64encode(chunk).decode("ascii")
        redirect = ">" if index == 0 else ">>"
        script = (
            f"printf '%s' {shlex.quote(encoded)} | base64 -d {redirect} {shlex.quote(target)}"
        )
        if index == 0:
            script = f"mkdir -p {shlex.quote(parent)} && {script}"
        requests.append(
            ExecutionRequest(
                sandbox_id=session.sandbox_id,
                command=["bash", "-c", script],
                working_directory=session.workspace_root,
            )
        )
    return requests


def build_list_directory(
    session: SandboxSession, path: str = ".", guard: Optional[Guard] = None
) -> ExecutionRequest:
    guard = guard or get_guard()
    target = guard.resolve_path(path, session.workspace_root)
    return ExecutionRequest(
        sandbox_id=session.sandbox_id,
        command=["ls", "-1Ap", target],
        working_directory=session.workspace_root,
    )


def build_find_files(
    session: SandboxSession,
    pattern: str,
    path: str = ".",
    max_depth: Optional[int] = None,
    guard: Optional[Guard] = None,
) -> ExecutionRequest:
    guard = guard or get_guard()
    if not pattern or "/" in pattern or ".." in pattern:
        raise SecurityViolation(f"Invalid file name pattern: {pattern!r}")
    target = guard.resolve_path(path, session.workspace_root)

    command = ["find", target]
    if max_depth is not None:
        command += ["-maxdepth", str(int(max_depth))]
    command += ["-type", "f", "-name", pattern]
    for excluded in FIND_EXCLUDED_PATHS:
        command += ["-not", "-path", excluded]
    return ExecutionRequest(
        sandbox_id=session.sandbox_id,
        command=command,
        working_directory=session.workspace_root,
    )


class CommandGateway:
    """Guarded proxy in front of a sandbox's raw execute primitive.

    Attributes:
        executor: The sandbox backend.
        guard: Path and command guard.
        settings: Timeout and workspace defaults.
    """

    def __init__(
        self,
        executor: SandboxExecutor,
        guard: Optional[Guard] = None,
        settings: Optional[GatewaySettings] = None,
    ):
        self.executor = executor
        self.guard = guard or get_guard()
        self.settings = settings or config.gateway

    def _reject(self, request: ExecutionRequest, reason: str) -> ExecutionResult:
        logger.warning(f"Rejected request for sandbox {request.sandbox_id}: {reason}")
        return ExecutionResult.failure(ErrorType.SECURITY_VIOLATION, reason)

    async def execute(
        self,
        session: SandboxSession,
        request: ExecutionRequest,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """Runs a request inside the session's sandbox.

        Args:
            session: Session the request belongs to.
            request: Command, working directory and sandbox id.
            timeout: Seconds before the call is abandoned.

        Returns:
            ExecutionResult: Never raises; failures carry ``error_type``.
        """
        if request.sandbox_id != session.sandbox_id:
            return self._reject(
                request,
                f"Request targets sandbox {request.sandbox_id}, "
                f"session is bound to {session.sandbox_id}",
            )

        verdict = self.guard.check_sandbox_id(request.sandbox_id)
        if not verdict.allowed:
            return self._reject(request, verdict.reason)

        verdict = self.guard.check_path(request.working_directory, session.workspace_root)
        if not verdict.allowed:
            return self._reject(request, verdict.reason)

        verdict = self.guard.check_command(request.command)
        if not verdict.allowed:
            return self._reject(request, verdict.reason)

        verdict = self.guard.check_command_paths(request.command, session.workspace_root)
        if not verdict.allowed:
            return self._reject(request, verdict.reason)

        if not session.is_running:
            return ExecutionResult.failure(
                ErrorType.EXECUTION_ERROR,
                f"Sandbox {session.sandbox_id} is {session.status.value}",
            )

        effective_timeout = timeout if timeout is not None else self.settings.default_timeout
        start_time = time.monotonic()
        try:
            raw: RawExecution = await asyncio.wait_for(
                self.executor.execute(
                    request.sandbox_id, list(request.command), request.working_directory
                ),
                timeout=effective_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Command timed out after {effective_timeout}s in {request.sandbox_id}: "
                f"{request.command_text}"
            )
            return ExecutionResult.failure(
                ErrorType.EXECUTION_TIMEOUT,
                f"Command execution timed out after {effective_timeout} seconds",
            )
        except Exception as e:
            logger.error(f"Sandbox execution failed in {request.sandbox_id}: {e}")
            return ExecutionResult.failure(ErrorType.EXECUTION_ERROR, str(e))

        elapsed = time.monotonic() - start_time
        logger.debug(
            f"[{request.sandbox_id}] {request.command_text} -> "
            f"exit={raw.exit_code} in {elapsed:.2f}s"
        )
        return self._normalise(raw)

    @staticmethod
    def _normalise(raw: RawExecution) -> ExecutionResult:
        success = raw.success
        if raw.exit_code is not None:
            success = success and raw.exit_code == 0
        error = None
        error_type = None
        if not success:
            error = raw.error or raw.stderr.strip() or (
                f"Command exited with code {raw.exit_code}"
                if raw.exit_code is not None
                else "Command failed"
            )
            error_type = ErrorType.EXECUTION_ERROR
        return ExecutionResult(
            success=success,
            stdout=raw.stdout or "",
            stderr=raw.stderr or "",
            exit_code=raw.exit_code,
            error=error,
            error_type=error_type,
        )

    async def run(
        self,
        session: SandboxSession,
        command: List[str],
        working_directory: str = ".",
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """Build and execute a command relative to the workspace."""
        try:
            request = build_command(session, command, working_directory, self.guard)
        except SecurityViolation as e:
            return ExecutionResult.failure(ErrorType.SECURITY_VIOLATION, e.message)
        return await self.execute(session, request, timeout)

    async def read_file(
        self, session: SandboxSession, path: str, timeout: Optional[float] = None
    ) -> ExecutionResult:
        try:
            request = build_read_file(session, path, self.guard)
        except SecurityViolation as e:
            return ExecutionResult.failure(ErrorType.SECURITY_VIOLATION, e.message)
        return await self.execute(session, request, timeout)

    async def write_file(
        self,
        session: SandboxSession,
        path: str,
        content: str,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        try:
            requests = build_write_file(
                session, path, content, self.guard, self.settings.write_chunk_bytes
            )
        except SecurityViolation as e:
            return ExecutionResult.failure(ErrorType.SECURITY_VIOLATION, e.message)
        for request in requests:
            result = await self.execute(session, request, timeout)
            if not result.success:
                break
        return result

    async def list_directory(
        self, session: SandboxSession, path: str = ".", timeout: Optional[float] = None
    ) -> ExecutionResult:
        try:
            request = build_list_directory(session, path, self.guard)
        except SecurityViolation as e:
            return ExecutionResult.failure(ErrorType.SECURITY_VIOLATION, e.message)
        return await self.execute(session, request, timeout)

    async def find_files(
        self,
        session: SandboxSession,
        pattern: str,
        path: str = ".",
        max_depth: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        depth = max_depth if max_depth is not None else self.settings.find_max_depth
        try:
            request = build_find_files(session, pattern, path, depth, self.guard)
        except SecurityViolation as e:
            return ExecutionResult.failure(ErrorType.SECURITY_VIOLATION, e.message)
        return await self.execute(session, request, timeout)
