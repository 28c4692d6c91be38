import asyncio
from typing import List, Optional, Protocol, runtime_checkable

import docker
from docker.errors import APIError, DockerException, NotFound
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sandbox_engine.config import DockerSettings, config
from sandbox_engine.logger import logger


class RawExecution(BaseModel):
    """What a sandbox backend reports for one command."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None


@runtime_checkable
class SandboxExecutor(Protocol):
    """Raw execute primitive exposed by the sandbox runtime."""

    async def execute(
        self, sandbox_id: str, command: List[str], working_directory: str
    ) -> RawExecution:
        """Runs an argv-style command inside the sandbox.

        Args:
            sandbox_id: Container id or name.
            command: Command tokens, never a raw shell string.
            working_directory: Directory inside the sandbox.

        Returns:
            RawExecution: stdout, stderr and exit code.
        """
        ...


class DockerSandboxExecutor:
    """Execute primitive backed by the Docker Engine API.

    Attributes:
        settings: Docker connection settings.
        client: Docker client, created lazily.
    """

    def __init__(
        self,
        settings: Optional[DockerSettings] = None,
        client: Optional[docker.DockerClient] = None,
    ):
        self.settings = settings or config.docker
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            if self.settings.base_url:
                self._client = docker.DockerClient(base_url=self.settings.base_url)
            else:
                self._client = docker.from_env()
        return self._client

    def _get_container(self, sandbox_id: str):
        getter = retry(
            retry=retry_if_exception_type(APIError) & retry_if_not_exception_type(NotFound),
            stop=stop_after_attempt(self.settings.lookup_attempts),
            wait=wait_exponential(multiplier=0.2, max=2),
            reraise=True,
        )(self.client.containers.get)
        return getter(sandbox_id)

    def _exec(
        self, sandbox_id: str, command: List[str], working_directory: str
    ) -> RawExecution:
        try:
            container = self._get_container(sandbox_id)
        except NotFound:
            return RawExecution(success=False, error=f"Sandbox {sandbox_id} not found")

        if container.status != "running":
            return RawExecution(
                success=False,
                error=f"Sandbox {sandbox_id} is not running (status: {container.status})",
            )

        exit_code, output = container.exec_run(
            cmd=command,
            workdir=working_directory,
            user=self.settings.exec_user or "",
            demux=True,
        )
        stdout_bytes, stderr_bytes = output if output else (None, None)
        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        return RawExecution(
            success=exit_code == 0,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            error=None if exit_code == 0 else (stderr.strip() or f"Exit code {exit_code}"),
        )

    async def execute(
        self, sandbox_id: str, command: List[str], working_directory: str
    ) -> RawExecution:
        logger.debug(f"docker exec [{sandbox_id}] {' '.join(command)} (cwd={working_directory})")
        try:
            return await asyncio.to_thread(
                self._exec, sandbox_id, command, working_directory
            )
        except DockerException as e:
            logger.error(f"Docker exec failed for {sandbox_id}: {e}")
            return RawExecution(success=False, error=f"Docker execution failed: {e}")
