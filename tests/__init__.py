"""
Test suite for the sandbox engine.

Modules:
- conftest.py: Shared fixtures and the in-memory fake sandbox
- sandbox/: Guard, gateway, Docker executor, session registry, lifecycle
- tool/: Tool registry, rate limiter, dispatcher and the built-in tools
- agent/: Completion heuristics and the decision loop

Test markers:
- @pytest.mark.asyncio: Async tests
- @pytest.mark.integration: Integration tests

Usage:
    # Run all tests
    pytest tests/ -v

    # Run specific test
    pytest tests/sandbox/test_lifecycle.py::TestStopAndRestart -v
"""
