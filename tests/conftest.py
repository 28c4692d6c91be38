"""
Shared fixtures for the sandbox engine tests.

Provides:
- An in-memory fake sandbox that understands the commands the engine issues
- Sessions, guard, gateway and lifecycle controller wired to the fake
- Settings with short timeouts
"""

import asyncio
import base64
import fnmatch
import posixpath
import re
from typing import Dict, List, Optional

import pytest

from sandbox_engine.config import (
    DispatcherSettings,
    GatewaySettings,
    GuardSettings,
    LifecycleSettings,
    LoopSettings,
)
from sandbox_engine.sandbox.client import RawExecution
from sandbox_engine.sandbox.gateway import CommandGateway
from sandbox_engine.sandbox.guard import Guard
from sandbox_engine.sandbox.lifecycle import LifecycleController
from sandbox_engine.schema import SandboxSession


WORKSPACE = "/workspace/proj"

NEXT_READY_LOG = (
    "> proj@0.1.0 dev\n"
    "> next dev\n"
    "\n"
    "  \x1b[1m▲ Next.js 14.2.3\x1b[0m\n"
    "  - Local:        http://localhost:3000\n"
    " ✓ Ready in 1.8s\n"
)


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "asyncio: mark test as async test"
    )


# ============================================================================
# Fake sandbox
# ============================================================================

class FakeSandbox:
    """In-memory stand-in for the sandbox execute primitive.

    Understands cat, ls, find, tail, pgrep, pkill, curl and the bash
    scripts the gateway and lifecycle controller build.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.files: Dict[str, str] = {}
        self.raw_files: Dict[str, bytes] = {}
        self.running = False
        self.pid = "4242"
        self.listening: List[int] = []
        self.ready_log = NEXT_READY_LOG
        self.listen_port = 3000
        self.fail_start = False
        self.never_ready = False
        self.delay = 0.0
        self.spawn_count = 0

    def commands(self, program: str) -> List[List[str]]:
        return [call for call in self.calls if call and call[0] == program]

    def scripts(self, needle: str) -> List[str]:
        return [
            call[2]
            for call in self.calls
            if len(call) == 3 and call[0] == "bash" and needle in call[2]
        ]

    async def execute(
        self, sandbox_id: str, command: List[str], working_directory: str
    ) -> RawExecution:
        self.calls.append(list(command))
        if self.delay:
            await asyncio.sleep(self.delay)

        program = command[0]
        if program == "pgrep":
            if self.running:
                return RawExecution(success=True, stdout=f"{self.pid}\n", exit_code=0)
            return RawExecution(success=False, exit_code=1)

        if program == "pkill":
            was_running = self.running
            self.running = False
            self.listening = []
            return RawExecution(success=was_running, exit_code=0 if was_running else 1)

        if program in ("cat", "tail"):
            path = command[-1]
            if path not in self.files:
                return RawExecution(
                    success=False,
                    stderr=f"{program}: {path}: No such file or directory",
                    exit_code=1,
                )
            content = self.files[path]
            if program == "tail":
                lines = content.splitlines()[-int(command[2]):]
                content = "\n".join(lines) + ("\n" if lines else "")
            return RawExecution(success=True, stdout=content, exit_code=0)

        if program == "ls":
            return self._ls(command[-1])

        if program == "find":
            return self._find(command)

        if program == "curl":
            code = "200" if self.running else "000"
            return RawExecution(success=self.running, stdout=code, exit_code=0 if self.running else 7)

        if program == "bash":
            return self._bash(command[2])

        return RawExecution(success=True, exit_code=0)

    def _ls(self, path: str) -> RawExecution:
        prefix = path.rstrip("/") + "/"
        children = set()
        for file_path in self.files:
            if file_path.startswith(prefix):
                rest = file_path[len(prefix):]
                head, sep, _ = rest.partition("/")
                children.add(head + ("/" if sep else ""))
        if not children:
            return RawExecution(
                success=False,
                stderr=f"ls: cannot access '{path}': No such file or directory",
                exit_code=2,
            )
        return RawExecution(success=True, stdout="\n".join(sorted(children)) + "\n", exit_code=0)

    def _find(self, command: List[str]) -> RawExecution:
        root = command[1].rstrip("/")
        pattern = command[command.index("-name") + 1]
        matches = [
            path
            for path in sorted(self.files)
            if path.startswith(root + "/")
            and fnmatch.fnmatch(posixpath.basename(path), pattern)
            and "/node_modules/" not in path
            and "/.git/" not in path
        ]
        return RawExecution(success=True, stdout="".join(f"{m}\n" for m in matches), exit_code=0)

    def _bash(self, script: str) -> RawExecution:
        if "nohup" in script:
            if self.fail_start:
                return RawExecution(success=False, stderr="npm ERR! missing script: dev", exit_code=1)
            log_path = re.search(r"> (\S+) 2>&1", script).group(1)
            self.spawn_count += 1
            if not self.never_ready:
                self.running = True
                self.listening = [self.listen_port]
                self.files[log_path] = self.ready_log
            return RawExecution(success=True, stdout=f"{self.pid}\n", exit_code=0)

        if "netstat" in script:
            lines = [
                f"tcp        0      0 0.0.0.0:{port}            0.0.0.0:*               LISTEN\n"
                for port in self.listening
            ]
            return RawExecution(success=True, stdout="".join(lines), exit_code=0)

        write = re.search(r"printf '%s' (\S+) \| base64 -d (>>?) (\S+)", script)
        if write:
            encoded, redirect, path = write.groups()
            data = base64.b64decode(encoded.strip("'"))
            if redirect == ">>":
                data = self.raw_files.get(path, b"") + data
            self.raw_files[path] = data
            self.files[path] = data.decode("utf-8", errors="replace")
            return RawExecution(success=True, exit_code=0)

        return RawExecution(success=True, exit_code=0)


# ============================================================================
# Engine fixtures
# ============================================================================

@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def session() -> SandboxSession:
    return SandboxSession(sandbox_id="proj-sandbox", workspace_root=WORKSPACE)


@pytest.fixture
def guard() -> Guard:
    return Guard(GuardSettings())


@pytest.fixture
def gateway(fake_sandbox, guard) -> CommandGateway:
    return CommandGateway(fake_sandbox, guard=guard, settings=GatewaySettings(default_timeout=2.0))


@pytest.fixture
def lifecycle_settings() -> LifecycleSettings:
    return LifecycleSettings(
        start_timeout=0.5,
        poll_interval=0.01,
        max_restarts=2,
        restart_cooldown=10.0,
    )


@pytest.fixture
def controller(gateway, lifecycle_settings) -> LifecycleController:
    return LifecycleController(gateway, settings=lifecycle_settings)


@pytest.fixture
def dispatcher_settings() -> DispatcherSettings:
    return DispatcherSettings(default_max_calls_per_minute=60, rate_window=60.0)


@pytest.fixture
def loop_settings() -> LoopSettings:
    return LoopSettings(max_retries=3)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def workspace_path(relative: Optional[str] = None) -> str:
    return posixpath.join(WORKSPACE, relative) if relative else WORKSPACE
