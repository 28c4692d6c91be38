"""
Tests for the command execution gateway.
"""

import base64

import pytest

from sandbox_engine.config import GatewaySettings, GuardSettings
from sandbox_engine.exceptions import ErrorType, SecurityViolation
from sandbox_engine.sandbox.client import RawExecution
from sandbox_engine.sandbox.gateway import (
    CommandGateway,
    build_find_files,
    build_list_directory,
    build_read_file,
    build_write_file,
)
from sandbox_engine.sandbox.guard import Guard
from sandbox_engine.schema import ExecutionRequest, SandboxSession, SandboxStatus
from tests.conftest import WORKSPACE, workspace_path


class TestRequestBuilders:
    def test_read_file_uses_absolute_path(self, session, guard):
        request = build_read_file(session, "src/app.ts", guard)
        assert request.command == ["cat", workspace_path("src/app.ts")]
        assert request.working_directory == WORKSPACE
        assert request.sandbox_id == session.sandbox_id

    def test_read_file_outside_workspace_raises(self, session, guard):
        with pytest.raises(SecurityViolation):
            build_read_file(session, "../../etc/passwd", guard)

    def test_write_file_encodes_content(self, session, guard):
        content = "rm -rf / && sudo reboot\n"
        [request] = build_write_file(session, "notes/danger.txt", content, guard)

        assert request.command[:2] == ["bash", "-c"]
        script = request.command[2]
        assert "mkdir -p /workspace/proj/notes" in script
        assert base64.b64encode(content.encode()).decode() in script
        assert "sudo" not in script
        # Encoded content does not trip the command denylist
        assert guard.is_safe_command(request.command) is True

    def test_write_file_splits_large_content(self, session, guard):
        content = "a" * 10
        requests = build_write_file(session, "big.txt", content, guard, chunk_size=4)

        # Chunk size is rounded down to whole base64 groups
        assert len(requests) == 4
        scripts = [request.command[2] for request in requests]
        assert scripts[0].startswith("mkdir -p ")
        assert f"> {workspace_path('big.txt')}" in scripts[0]
        assert all(f">> {workspace_path('big.txt')}" in s for s in scripts[1:])
        assert all("mkdir" not in s for s in scripts[1:])

    def test_write_empty_file_is_one_request(self, session, guard):
        assert len(build_write_file(session, "empty.txt", "", guard)) == 1

    def test_list_directory(self, session, guard):
        request = build_list_directory(session, "src", guard)
        assert request.command == ["ls", "-1Ap", workspace_path("src")]

    def test_find_files_excludes_vendor_dirs(self, session, guard):
        request = build_find_files(session, "*.tsx", "src", max_depth=3, guard=guard)
        assert request.command[:4] == ["find", workspace_path("src"), "-maxdepth", "3"]
        assert "*/node_modules/*" in request.command
        assert "*/.git/*" in request.command

    @pytest.mark.parametrize("pattern", ["", "../*.ts", "src/*.ts"])
    def test_find_files_rejects_bad_pattern(self, session, guard, pattern):
        with pytest.raises(SecurityViolation):
            build_find_files(session, pattern, guard=guard)


class TestGatewayExecute:
    @pytest.mark.asyncio
    async def test_successful_command(self, gateway, session, fake_sandbox):
        fake_sandbox.files[workspace_path("package.json")] = '{"name": "proj"}'

        result = await gateway.read_file(session, "package.json")

        assert result.success is True
        assert result.stdout == '{"name": "proj"}'
        assert result.exit_code == 0
        assert result.error_type is None

    @pytest.mark.asyncio
    async def test_traversal_never_reaches_sandbox(self, gateway, session, fake_sandbox):
        result = await gateway.read_file(session, "../../etc/passwd")

        assert result.success is False
        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_denied_command_never_reaches_sandbox(self, gateway, session, fake_sandbox):
        result = await gateway.run(session, ["sudo", "rm", "-rf", "/"])

        assert result.success is False
        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_hand_built_request_with_bad_cwd_rejected(self, gateway, session, fake_sandbox):
        request = ExecutionRequest(
            sandbox_id=session.sandbox_id, command=["ls"], working_directory="/etc"
        )
        result = await gateway.execute(session, request)

        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "target",
        [
            "../../etc/passwd",
            "/home/alice/.ssh/id_rsa",
            "/tmp/../var/secret",
            "~/.bashrc",
            "/opt/other/project/.env",
        ],
    )
    async def test_hand_built_request_with_outside_path_rejected(
        self, gateway, session, fake_sandbox, target
    ):
        request = ExecutionRequest(
            sandbox_id=session.sandbox_id, command=["cat", target], working_directory=WORKSPACE
        )
        result = await gateway.execute(session, request)

        assert result.success is False
        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_option_value_outside_workspace_rejected(self, gateway, session, fake_sandbox):
        request = ExecutionRequest(
            sandbox_id=session.sandbox_id,
            command=["cp", "src/app.ts", "--target-directory=/home/alice"],
            working_directory=WORKSPACE,
        )
        result = await gateway.execute(session, request)

        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_workspace_paths_and_dev_null_pass(self, gateway, session, fake_sandbox):
        request = ExecutionRequest(
            sandbox_id=session.sandbox_id,
            command=["curl", "-s", "-o", "/dev/null", "-w", "%{http_code}", "http://localhost:3000"],
            working_directory=WORKSPACE,
        )
        result = await gateway.execute(session, request)

        assert result.error_type != ErrorType.SECURITY_VIOLATION
        assert len(fake_sandbox.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name", ["src/utils/shutdown.ts", "pages/reboot.tsx", "halt/index.js"]
    )
    async def test_read_and_write_files_named_like_shutdown_commands(
        self, gateway, session, fake_sandbox, name
    ):
        written = await gateway.write_file(session, name, "export {};\n")
        assert written.success is True

        read = await gateway.read_file(session, name)
        assert read.success is True
        assert read.stdout == "export {};\n"

    @pytest.mark.asyncio
    async def test_mismatched_sandbox_rejected(self, gateway, session, fake_sandbox):
        request = ExecutionRequest(
            sandbox_id="another-sandbox", command=["ls"], working_directory=WORKSPACE
        )
        result = await gateway.execute(session, request)

        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert "another-sandbox" in result.error
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_sandbox_allow_list(self, fake_sandbox, session):
        gateway = CommandGateway(
            fake_sandbox, guard=Guard(GuardSettings(allowed_sandbox_ids=["other"]))
        )
        result = await gateway.run(session, ["ls"])

        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_stopped_session_not_executed(self, gateway, fake_sandbox):
        stopped = SandboxSession(
            sandbox_id="proj-sandbox",
            workspace_root=WORKSPACE,
            status=SandboxStatus.STOPPED,
        )
        result = await gateway.run(stopped, ["ls"])

        assert result.success is False
        assert result.error_type == ErrorType.EXECUTION_ERROR
        assert "stopped" in result.error
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_timeout_becomes_result(self, fake_sandbox, guard, session):
        fake_sandbox.delay = 0.5
        gateway = CommandGateway(
            fake_sandbox, guard=guard, settings=GatewaySettings(default_timeout=0.05)
        )

        result = await gateway.run(session, ["ls"])

        assert result.success is False
        assert result.error_type == ErrorType.EXECUTION_TIMEOUT
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_per_call_timeout_overrides_default(self, fake_sandbox, gateway, session):
        fake_sandbox.delay = 0.2
        result = await gateway.run(session, ["ls"], timeout=0.01)
        assert result.error_type == ErrorType.EXECUTION_TIMEOUT

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_result(self, guard, session):
        class BrokenExecutor:
            async def execute(self, sandbox_id, command, working_directory):
                raise ConnectionError("daemon unreachable")

        gateway = CommandGateway(BrokenExecutor(), guard=guard)
        result = await gateway.run(session, ["ls"])

        assert result.success is False
        assert result.error_type == ErrorType.EXECUTION_ERROR
        assert "daemon unreachable" in result.error

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_failure(self, gateway, session):
        result = await gateway.read_file(session, "missing.txt")

        assert result.success is False
        assert result.exit_code == 1
        assert result.error_type == ErrorType.EXECUTION_ERROR
        assert "No such file" in result.error

    @pytest.mark.asyncio
    async def test_write_then_read(self, gateway, session, fake_sandbox):
        content = "export const answer = 42;\n"
        written = await gateway.write_file(session, "src/answer.ts", content)
        assert written.success is True
        assert fake_sandbox.files[workspace_path("src/answer.ts")] == content

        read = await gateway.read_file(session, "src/answer.ts")
        assert read.stdout == content

    @pytest.mark.asyncio
    async def test_large_write_is_sent_in_chunks(self, fake_sandbox, guard, session):
        gateway = CommandGateway(
            fake_sandbox, guard=guard, settings=GatewaySettings(write_chunk_bytes=300)
        )
        content = "héllo wörld, ünïcode ✓\n" * 100

        result = await gateway.write_file(session, "src/big.txt", content)

        assert result.success is True
        assert len(fake_sandbox.calls) > 1
        assert all(len(arg) < 1024 for call in fake_sandbox.calls for arg in call)
        assert fake_sandbox.files[workspace_path("src/big.txt")] == content

    @pytest.mark.asyncio
    async def test_failed_chunk_stops_the_write(self, guard, session):
        class FailingExecutor:
            def __init__(self):
                self.calls = 0

            async def execute(self, sandbox_id, command, working_directory):
                self.calls += 1
                return RawExecution(success=False, stderr="No space left on device", exit_code=1)

        executor = FailingExecutor()
        gateway = CommandGateway(
            executor, guard=guard, settings=GatewaySettings(write_chunk_bytes=3)
        )
        result = await gateway.write_file(session, "a.txt", "abcdefghi")

        assert result.success is False
        assert "No space left" in result.error
        assert executor.calls == 1

    @pytest.mark.asyncio
    async def test_find_files(self, gateway, session, fake_sandbox):
        fake_sandbox.files.update(
            {
                workspace_path("src/a.tsx"): "",
                workspace_path("src/b.ts"): "",
                workspace_path("node_modules/x/c.tsx"): "",
            }
        )
        result = await gateway.find_files(session, "*.tsx")

        assert result.success is True
        assert result.stdout.split() == [workspace_path("src/a.tsx")]


class TestNormalise:
    def test_success_flag_and_exit_code_must_agree(self):
        result = CommandGateway._normalise(RawExecution(success=True, exit_code=3))
        assert result.success is False
        assert "code 3" in result.error

    def test_error_falls_back_to_stderr(self):
        result = CommandGateway._normalise(
            RawExecution(success=False, stderr="boom\n", exit_code=1)
        )
        assert result.error == "boom"
