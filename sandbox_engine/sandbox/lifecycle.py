"""
Dev server lifecycle inside a sandbox.

The controller starts, stops, restarts and probes one long-lived
process per sandbox through the command gateway. Restarts go through a
per-sandbox ``RestartGovernor``.
"""

import asyncio
import math
import re
import shlex
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from sandbox_engine.config import LifecycleSettings, config
from sandbox_engine.exceptions import CircuitBreakerOpen, ErrorType, SecurityViolation
from sandbox_engine.logger import logger
from sandbox_engine.sandbox.gateway import CommandGateway
from sandbox_engine.schema import ExecutionResult, SandboxSession


_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_LISTEN_PORT = re.compile(r":(\d+)\s")
_LOOPBACK_HOSTS = ("localhost", "0.0.0.0", "127.0.0.1", "[::]", "[::1]")


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class ServerStatus(BaseModel):
    is_running: bool
    pid: Optional[str] = None
    port: Optional[int] = None
    url: Optional[str] = None
    error: Optional[str] = None


class LifecycleResult(BaseModel):
    success: bool
    message: str = ""
    url: Optional[str] = None
    pid: Optional[str] = None
    restart_count: int = 0
    output: str = ""
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class LogReadResult(BaseModel):
    success: bool
    lines: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class HealthReport(BaseModel):
    status: str  # "up" or "down"
    port: int
    http_status: Optional[int] = None
    response_time_ms: float = 0.0
    error: Optional[str] = None


class RestartGovernor:
    """Circuit breaker for restarts of one sandbox's dev server.

    At most ``max_restarts`` restarts are allowed while each follows the
    previous one within ``cooldown`` seconds; once the cooldown elapses
    after the last restart the window counter starts over.
    """

    def __init__(
        self,
        max_restarts: int = 5,
        cooldown: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_restarts = max_restarts
        self.cooldown = cooldown
        self.restart_count = 0
        self.last_restart_timestamp: Optional[float] = None
        self.consecutive_failures = 0
        self._clock = clock
        self._lock = threading.Lock()

    def remaining_cooldown(self) -> float:
        with self._lock:
            if self.last_restart_timestamp is None:
                return 0.0
            elapsed = self._clock() - self.last_restart_timestamp
            return max(0.0, self.cooldown - elapsed)

    def acquire(self) -> int:
        """Reserve one restart, returning the updated counter.

        Raises:
            CircuitBreakerOpen: If the window is exhausted.
        """
        with self._lock:
            now = self._clock()
            if (
                self.last_restart_timestamp is not None
                and now - self.last_restart_timestamp >= self.cooldown
            ):
                self.restart_count = 0

            if self.restart_count >= self.max_restarts:
                retry_after = self.cooldown - (now - (self.last_restart_timestamp or now))
                raise CircuitBreakerOpen(
                    f"Restart limit reached ({self.max_restarts} within "
                    f"{self.cooldown:g}s); retry in {retry_after:.1f}s",
                    retry_after=max(0.0, retry_after),
                )

            self.restart_count += 1
            self.last_restart_timestamp = now
            return self.restart_count

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self.consecutive_failures += 1

    def reset(self) -> None:
        with self._lock:
            self.restart_count = 0
            self.last_restart_timestamp = None
            self.consecutive_failures = 0

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "restart_count": self.restart_count,
                "last_restart_timestamp": self.last_restart_timestamp,
                "consecutive_failures": self.consecutive_failures,
                "max_restarts": self.max_restarts,
                "cooldown": self.cooldown,
            }


def normalize_url(raw: str) -> str:
    """Make a URL scraped from logs reachable from the host."""
    url = raw.strip().rstrip(".,;)]'\"")
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"

    scheme, _, rest = url.partition("://")
    host_port = rest.split("/", 1)[0]
    host, _, port = host_port.rpartition(":") if ":" in host_port else (host_port, "", "")
    if host in _LOOPBACK_HOSTS or host_port in _LOOPBACK_HOSTS:
        port = port if port.isdigit() else "3000"
        return f"http://localhost:{port}"
    return url.rstrip("/")


class LifecycleController:
    """Starts, stops, restarts and probes a dev server per sandbox.

    Sessions are passed into every call; the only state kept here is the
    per-sandbox restart governor and state machine.

    Attributes:
        gateway: Command gateway used for every sandbox call.
        settings: Start command, log path, discovery and breaker settings.
    """

    def __init__(
        self,
        gateway: CommandGateway,
        settings: Optional[LifecycleSettings] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.gateway = gateway
        self.settings = settings or config.lifecycle
        self._clock = clock or time.monotonic
        self._governors: Dict[str, RestartGovernor] = {}
        self._states: Dict[str, ServerState] = {}
        self._lock = threading.Lock()
        self._ready_patterns = [
            re.compile(pattern, re.IGNORECASE) for pattern in self.settings.ready_patterns
        ]

    def governor(self, sandbox_id: str) -> RestartGovernor:
        with self._lock:
            governor = self._governors.get(sandbox_id)
            if governor is None:
                governor = RestartGovernor(
                    max_restarts=self.settings.max_restarts,
                    cooldown=self.settings.restart_cooldown,
                    clock=self._clock,
                )
                self._governors[sandbox_id] = governor
            return governor

    def state(self, sandbox_id: str) -> ServerState:
        with self._lock:
            return self._states.get(sandbox_id, ServerState.STOPPED)

    def _set_state(self, sandbox_id: str, state: ServerState) -> None:
        with self._lock:
            previous = self._states.get(sandbox_id, ServerState.STOPPED)
            self._states[sandbox_id] = state
        if previous != state:
            logger.debug(f"Dev server in {sandbox_id}: {previous.value} -> {state.value}")

    def _log_path(self, session: SandboxSession) -> str:
        return self.gateway.guard.resolve_path(self.settings.log_path, session.workspace_root)

    async def check_status(
        self, session: SandboxSession, resolve_url: bool = True
    ) -> ServerStatus:
        """Probe for the dev server process, then its port and URL."""
        pid = None
        last_error = None
        for pattern in self.settings.process_patterns:
            result = await self.gateway.run(session, ["pgrep", "-f", pattern])
            if result.success and result.stdout.strip():
                pid = result.stdout.strip().splitlines()[0].strip()
                break
            if result.error_type not in (None, ErrorType.EXECUTION_ERROR):
                last_error = result.error

        if pid is None:
            return ServerStatus(is_running=False, error=last_error)

        status = ServerStatus(is_running=True, pid=pid)
        if resolve_url:
            status.port = await self._detect_port(session)
            status.url = await self.discover_url(session, known_port=status.port)
        return status

    async def _detect_port(self, session: SandboxSession) -> Optional[int]:
        result = await self.gateway.run(
            session, ["bash", "-c", "netstat -tln 2>/dev/null || ss -tln 2>/dev/null"]
        )
        if not result.success:
            return None
        listening = {int(port) for port in _LISTEN_PORT.findall(result.stdout)}
        for port in self.settings.probe_ports:
            if port in listening:
                return port
        return None

    async def _tail(self, session: SandboxSession, lines: int) -> ExecutionResult:
        try:
            log_path = self._log_path(session)
        except SecurityViolation as e:
            return ExecutionResult.failure(ErrorType.SECURITY_VIOLATION, e.message)
        return await self.gateway.run(session, ["tail", "-n", str(lines), log_path])

    async def discover_url(
        self, session: SandboxSession, known_port: Optional[int] = None
    ) -> Optional[str]:
        """Best-effort URL discovery: ready patterns in the log, then ports."""
        result = await self._tail(session, self.settings.log_tail_lines)
        if result.success and result.stdout:
            logs = _ANSI_ESCAPE.sub("", result.stdout)
            for pattern in self._ready_patterns:
                match = pattern.search(logs)
                if match and match.group(1):
                    return normalize_url(match.group(1))

        port = known_port if known_port is not None else await self._detect_port(session)
        if port is not None:
            return normalize_url(f"localhost:{port}")
        return None

    async def start(self, session: SandboxSession) -> LifecycleResult:
        """Start the dev server unless it is already running."""
        sandbox_id = session.sandbox_id
        status = await self.check_status(session)
        if status.is_running:
            self._set_state(sandbox_id, ServerState.RUNNING)
            return LifecycleResult(
                success=True,
                message="Dev server already running",
                url=status.url,
                pid=status.pid,
                restart_count=self.governor(sandbox_id).restart_count,
            )

        try:
            log_path = self._log_path(session)
        except SecurityViolation as e:
            self._set_state(sandbox_id, ServerState.ERROR)
            return LifecycleResult(
                success=False,
                message="Invalid dev server log path",
                error=e.message,
                error_type=ErrorType.SECURITY_VIOLATION,
            )

        self._set_state(sandbox_id, ServerState.STARTING)
        log_dir = log_path.rsplit("/", 1)[0]
        script = (
            f"mkdir -p {shlex.quote(log_dir)}; "
            f"nohup {self.settings.start_command} > {shlex.quote(log_path)} 2>&1 & echo $!"
        )
        launch = await self.gateway.run(session, ["bash", "-c", script])
        if not launch.success:
            self._set_state(sandbox_id, ServerState.ERROR)
            logger.error(f"Failed to launch dev server in {sandbox_id}: {launch.error}")
            return LifecycleResult(
                success=False,
                message="Failed to launch dev server",
                output=launch.output,
                error=launch.error,
                error_type=launch.error_type,
            )

        max_polls = max(1, math.ceil(self.settings.start_timeout / self.settings.poll_interval))
        probe = ServerStatus(is_running=False)
        for _ in range(max_polls):
            probe = await self.check_status(session, resolve_url=False)
            if probe.is_running:
                break
            await asyncio.sleep(self.settings.poll_interval)

        if not probe.is_running:
            self._set_state(sandbox_id, ServerState.ERROR)
            message = (
                f"Dev server did not report running within {self.settings.start_timeout:g}s"
            )
            logger.warning(f"{message} ({sandbox_id})")
            return LifecycleResult(
                success=False,
                message=message,
                output=launch.output,
                error=message,
                error_type=ErrorType.EXECUTION_TIMEOUT,
            )

        url = await self.discover_url(session)
        self._set_state(sandbox_id, ServerState.RUNNING)
        logger.info(
            f"Dev server started in {sandbox_id} (PID: {probe.pid})"
            + (f" - URL: {url}" if url else "")
        )
        return LifecycleResult(
            success=True,
            message="Dev server started" + (f" - URL: {url}" if url else ""),
            url=url,
            pid=probe.pid,
            output=launch.output,
            restart_count=self.governor(sandbox_id).restart_count,
        )

    async def _terminate(self, session: SandboxSession) -> ExecutionResult:
        last = None
        for pattern in self.settings.process_patterns:
            result = await self.gateway.run(session, ["pkill", "-f", pattern])
            # pkill exits 1 when nothing matched
            if not result.success and result.exit_code != 1:
                return result
            last = result
        return ExecutionResult(
            success=True, stdout=last.stdout if last else "", exit_code=0
        )

    async def stop(self, session: SandboxSession) -> LifecycleResult:
        """Terminate the dev server and reset the restart governor."""
        result = await self._terminate(session)
        if not result.success:
            self._set_state(session.sandbox_id, ServerState.ERROR)
            return LifecycleResult(
                success=False,
                message="Failed to stop dev server",
                output=result.output,
                error=result.error,
                error_type=result.error_type,
            )

        self.governor(session.sandbox_id).reset()
        self._set_state(session.sandbox_id, ServerState.STOPPED)
        logger.info(f"Dev server stopped in {session.sandbox_id}")
        return LifecycleResult(success=True, message="Dev server stopped")

    async def restart(
        self, session: SandboxSession, reason: Optional[str] = None
    ) -> LifecycleResult:
        """Stop then start, subject to the restart governor."""
        governor = self.governor(session.sandbox_id)
        try:
            count = governor.acquire()
        except CircuitBreakerOpen as e:
            logger.warning(f"Restart refused for {session.sandbox_id}: {e.message}")
            return LifecycleResult(
                success=False,
                message="Restart refused by circuit breaker",
                restart_count=governor.restart_count,
                error=e.message,
                error_type=ErrorType.CIRCUIT_BREAKER_OPEN,
            )

        logger.info(
            f"Restarting dev server in {session.sandbox_id} "
            f"({count}/{governor.max_restarts})" + (f" - reason: {reason}" if reason else "")
        )

        stopped = await self._terminate(session)
        if not stopped.success:
            governor.record_failure()
            self._set_state(session.sandbox_id, ServerState.ERROR)
            return LifecycleResult(
                success=False,
                message="Restart failed while stopping the dev server",
                restart_count=count,
                output=stopped.output,
                error=stopped.error,
                error_type=stopped.error_type,
            )
        self._set_state(session.sandbox_id, ServerState.STOPPED)

        started = await self.start(session)
        if not started.success:
            governor.record_failure()
            return started.model_copy(
                update={
                    "message": f"Restart failed: {started.message}",
                    "restart_count": count,
                }
            )

        governor.record_success()
        message = f"Dev server restarted ({count}/{governor.max_restarts})"
        if reason:
            message += f" - reason: {reason}"
        return started.model_copy(update={"message": message, "restart_count": count})

    async def read_logs(
        self,
        session: SandboxSession,
        lines: Optional[int] = None,
        keyword: Optional[str] = None,
    ) -> LogReadResult:
        """Tail the dev server log, optionally keeping only matching lines."""
        count = min(lines or self.settings.log_tail_lines, self.settings.max_log_lines)
        result = await self._tail(session, max(1, count))
        if not result.success:
            return LogReadResult(
                success=False, error=result.error, error_type=result.error_type
            )
        entries = [
            _ANSI_ESCAPE.sub("", line) for line in result.stdout.splitlines() if line.strip()
        ]
        if keyword:
            needle = keyword.lower()
            entries = [line for line in entries if needle in line.lower()]
        return LogReadResult(success=True, lines=entries)

    async def search_logs(
        self, session: SandboxSession, keyword: str = "error", lines: int = 1000, limit: int = 100
    ) -> LogReadResult:
        result = await self.read_logs(session, lines=lines, keyword=keyword)
        if result.success:
            result.lines = result.lines[-limit:]
        return result

    async def check_health(
        self, session: SandboxSession, port: Optional[int] = None
    ) -> HealthReport:
        """HTTP probe of the dev server from inside the sandbox."""
        if port is None:
            port = await self._detect_port(session) or self.settings.probe_ports[0]

        timeout = self.settings.health_timeout
        start_time = time.monotonic()
        result = await self.gateway.run(
            session,
            [
                "curl", "-s", "-o", "/dev/null", "-w", "%{http_code}",
                "-m", str(int(math.ceil(timeout))), f"http://localhost:{port}",
            ],
            timeout=timeout + 5,
        )
        elapsed_ms = (time.monotonic() - start_time) * 1000

        code = result.stdout.strip()
        if result.success and code.isdigit() and code != "000":
            return HealthReport(
                status="up", port=port, http_status=int(code), response_time_ms=elapsed_ms
            )
        return HealthReport(
            status="down",
            port=port,
            response_time_ms=elapsed_ms,
            error=result.error or f"No HTTP response on port {port}",
        )
