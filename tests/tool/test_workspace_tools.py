"""
Tests for the workspace file tools, run through the dispatcher.
"""

import json

import pytest

from sandbox_engine.exceptions import ErrorType
from sandbox_engine.tool import ToolDispatcher, build_default_registry
from sandbox_engine.tool.base import ExecutionContext
from sandbox_engine.tool.workspace import detect_framework, path_validator
from tests.conftest import workspace_path


@pytest.fixture
def dispatcher(gateway, dispatcher_settings) -> ToolDispatcher:
    return ToolDispatcher(build_default_registry(gateway), settings=dispatcher_settings)


@pytest.fixture
def context(session) -> ExecutionContext:
    return ExecutionContext(user_id="dev", session=session)


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_write_then_read(self, dispatcher, context, fake_sandbox):
        written = await dispatcher.execute(
            "write_file", {"path": "src/app.ts", "content": "console.log('hi')\n"}, context
        )
        assert written.success is True
        assert written.data["bytes_written"] == 18
        assert "written successfully" in written.data["message"]
        assert fake_sandbox.files[workspace_path("src/app.ts")] == "console.log('hi')\n"

        read = await dispatcher.execute("read_file", {"path": "src/app.ts"}, context)
        assert read.data == {"path": "src/app.ts", "content": "console.log('hi')\n"}

    @pytest.mark.asyncio
    async def test_traversal_is_a_validation_error(self, dispatcher, context, fake_sandbox):
        result = await dispatcher.execute("read_file", {"path": "../../etc/passwd"}, context)

        assert result.success is False
        assert result.error_type == ErrorType.VALIDATION_ERROR
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_absolute_escape_is_a_security_violation(
        self, dispatcher, context, fake_sandbox
    ):
        result = await dispatcher.execute("read_file", {"path": "/etc/passwd"}, context)

        assert result.success is False
        assert result.error_type == ErrorType.SECURITY_VIOLATION
        assert fake_sandbox.calls == []

    @pytest.mark.asyncio
    async def test_missing_file(self, dispatcher, context):
        result = await dispatcher.execute("read_file", {"path": "nope.txt"}, context)

        assert result.success is False
        assert result.error_type == ErrorType.EXECUTION_ERROR

    @pytest.mark.asyncio
    async def test_requires_session(self, dispatcher):
        result = await dispatcher.execute("read_file", {"path": "a.txt"}, ExecutionContext())

        assert result.success is False
        assert "session" in result.error

    @pytest.mark.asyncio
    async def test_unknown_parameter_rejected(self, dispatcher, context):
        result = await dispatcher.execute(
            "read_file", {"path": "a.txt", "encoding": "latin-1"}, context
        )
        assert result.error_type == ErrorType.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_write_is_rate_limited(self, dispatcher, context):
        for i in range(30):
            result = await dispatcher.execute(
                "write_file", {"path": f"f{i}.txt", "content": "x"}, context
            )
            assert result.success is True

        refused = await dispatcher.execute(
            "write_file", {"path": "one-more.txt", "content": "x"}, context
        )
        assert refused.error_type == ErrorType.RATE_LIMIT_EXCEEDED


class TestListingAndSearch:
    @pytest.mark.asyncio
    async def test_list_directory_defaults_to_root(self, dispatcher, context, fake_sandbox):
        fake_sandbox.files.update(
            {
                workspace_path("package.json"): "{}",
                workspace_path("src/app.ts"): "",
            }
        )
        result = await dispatcher.execute("list_directory", None, context)

        assert result.data["path"] == "."
        assert result.data["entries"] == [
            {"name": "package.json", "type": "file"},
            {"name": "src", "type": "directory"},
        ]

    @pytest.mark.asyncio
    async def test_find_files_returns_relative_paths(self, dispatcher, context, fake_sandbox):
        fake_sandbox.files.update(
            {
                workspace_path("src/b.tsx"): "",
                workspace_path("src/a.tsx"): "",
                workspace_path("src/c.ts"): "",
                workspace_path("node_modules/lib/x.tsx"): "",
            }
        )
        result = await dispatcher.execute("find_files", {"pattern": "*.tsx"}, context)

        assert result.data == {
            "pattern": "*.tsx",
            "files": ["src/a.tsx", "src/b.tsx"],
            "count": 2,
        }

    @pytest.mark.asyncio
    async def test_find_files_rejects_path_in_pattern(self, dispatcher, context):
        result = await dispatcher.execute("find_files", {"pattern": "../*.env"}, context)
        assert result.error_type == ErrorType.SECURITY_VIOLATION


class TestProjectInfo:
    @pytest.mark.asyncio
    async def test_project_info(self, dispatcher, context, fake_sandbox):
        fake_sandbox.files[workspace_path("package.json")] = json.dumps(
            {
                "name": "shop",
                "version": "0.2.0",
                "scripts": {"dev": "next dev", "build": "next build"},
                "dependencies": {"next": "14.2.3", "react": "18.3.1"},
                "devDependencies": {"typescript": "5.4.5"},
            }
        )
        result = await dispatcher.execute("get_project_info", {}, context)

        assert result.data["name"] == "shop"
        assert result.data["framework"] == "Next.js"
        assert result.data["has_dev_script"] is True
        assert result.data["dependency_count"] == 2
        assert result.data["dev_dependency_count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_manifest(self, dispatcher, context, fake_sandbox):
        fake_sandbox.files[workspace_path("package.json")] = "{broken"
        result = await dispatcher.execute("get_project_info", {}, context)

        assert result.success is False
        assert "package.json" in result.error


def test_detect_framework():
    assert detect_framework({"devDependencies": {"vite": "5"}}) == "Vite"
    assert detect_framework({"dependencies": {"vue": "3"}}) == "Vue"
    assert detect_framework({}) == "unknown"


def test_path_validator():
    validate = path_validator("path")
    assert validate({"path": "src/a.ts"}).is_valid
    assert validate({}).is_valid
    assert not validate({"path": "~/x"}).is_valid
    assert not validate({"path": ""}).is_valid
    assert not validate({"path": 5}).is_valid
