import asyncio
import posixpath
import re
import threading
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from sandbox_engine.config import GatewaySettings, config
from sandbox_engine.logger import logger
from sandbox_engine.schema import SandboxSession, SandboxStatus


_PROJECT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class SessionRegistry:
    """Keyed registry of attached sandbox sessions.

    Owned by the process entry point and passed to whoever needs it;
    there is no module-level instance.

    Attributes:
        settings: Gateway settings, used for the workspace base directory.
        _sessions: Attached sessions keyed by sandbox id.
        _last_used: Last operation time per sandbox.
    """

    def __init__(self, settings: Optional[GatewaySettings] = None):
        self.settings = settings or config.gateway
        self._sessions: Dict[str, SandboxSession] = {}
        self._last_used: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._op_locks: Dict[str, asyncio.Lock] = {}

    def workspace_for(self, project: str) -> str:
        """Workspace root for a project name under the configured base."""
        if not project or not _PROJECT_NAME_PATTERN.match(project) or ".." in project:
            raise ValueError(f"Invalid project name: {project!r}")
        return posixpath.join(self.settings.workspace_base, project)

    def attach(
        self,
        sandbox_id: str,
        workspace_root: Optional[str] = None,
        project: Optional[str] = None,
        status: SandboxStatus = SandboxStatus.RUNNING,
    ) -> SandboxSession:
        """Attaches a project to a sandbox.

        Args:
            sandbox_id: Sandbox id.
            workspace_root: Absolute workspace path inside the sandbox.
            project: Project name, used when no workspace_root is given.
            status: Initial status.

        Returns:
            The new session. Re-attaching replaces the previous one.
        """
        if workspace_root is None:
            if project is None:
                raise ValueError("Either workspace_root or project is required")
            workspace_root = self.workspace_for(project)

        session = SandboxSession(
            sandbox_id=sandbox_id, workspace_root=workspace_root, status=status
        )
        with self._lock:
            if sandbox_id in self._sessions:
                logger.warning(f"Replacing session for sandbox {sandbox_id}")
            self._sessions[sandbox_id] = session
            self._last_used[sandbox_id] = time.time()
        logger.info(f"Attached sandbox {sandbox_id} at {session.workspace_root}")
        return session

    def get(self, sandbox_id: str) -> Optional[SandboxSession]:
        with self._lock:
            return self._sessions.get(sandbox_id)

    def detach(self, sandbox_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(sandbox_id, None)
            self._last_used.pop(sandbox_id, None)
            self._op_locks.pop(sandbox_id, None)
        if removed:
            logger.info(f"Detached sandbox {sandbox_id}")
        return removed is not None

    def set_status(self, sandbox_id: str, status: SandboxStatus) -> SandboxSession:
        with self._lock:
            session = self._sessions.get(sandbox_id)
            if session is None:
                raise KeyError(f"Sandbox {sandbox_id} not found")
            session.status = status
            return session

    def list(self) -> List[SandboxSession]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, sandbox_id: str) -> bool:
        with self._lock:
            return sandbox_id in self._sessions

    @asynccontextmanager
    async def sandbox_operation(self, sandbox_id: str):
        """Serialises operations against one sandbox.

        Args:
            sandbox_id: Sandbox ID.

        Raises:
            KeyError: If sandbox not found.
        """
        with self._lock:
            lock = self._op_locks.setdefault(sandbox_id, asyncio.Lock())

        async with lock:
            session = self.get(sandbox_id)
            if session is None:
                raise KeyError(f"Sandbox {sandbox_id} not found")
            with self._lock:
                self._last_used[sandbox_id] = time.time()
            yield session
