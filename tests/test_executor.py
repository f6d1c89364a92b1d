"""Tests for ExecutionEngine: workspace lifecycle, compile-once and limits."""

import shutil
from pathlib import Path

import pytest

from codejudge.config import Settings
from codejudge.exceptions import UnsupportedLanguageError
from codejudge.executor import ExecutionEngine
from codejudge.languages import C, LanguageRegistry
from codejudge.models import ExecutionStatus
from tests.conftest import CountingRunner, workspace_entries

requires_gcc = pytest.mark.skipif(shutil.which("gcc") is None, reason="gcc not installed")


class TestExecute:
    async def test_hello_world(self, engine: ExecutionEngine) -> None:
        result = await engine.execute("python", "print('Hello, World!')")
        assert result.status == ExecutionStatus.SUCCESS
        assert result.output.strip() == "Hello, World!"
        assert result.exit_code == 0

    async def test_raw_output_is_not_trimmed(self, engine: ExecutionEngine) -> None:
        result = await engine.execute("python", "print('  padded  ')")
        assert result.output == "  padded  \n"

    async def test_stdin_reaches_program(self, engine: ExecutionEngine) -> None:
        result = await engine.execute("python", "print(int(input()) * 2)", "21\n")
        assert result.output.strip() == "42"

    async def test_idempotent(self, engine: ExecutionEngine) -> None:
        code = "import sys\nprint(sum(map(int, sys.stdin.read().split())))"
        first = await engine.execute("python", code, "1 2 3")
        second = await engine.execute("python", code, "1 2 3")
        assert (first.status, first.output) == (second.status, second.output)

    async def test_runtime_error(self, engine: ExecutionEngine) -> None:
        result = await engine.execute("python", "raise ValueError('boom')")
        assert result.status == ExecutionStatus.RUNTIME_ERROR
        assert "ValueError: boom" in result.error_output

    async def test_runtime_stderr_is_capped(self, engine: ExecutionEngine, settings: Settings) -> None:
        code = "import sys\nsys.stderr.write('e' * 100000)\nsys.exit(1)\n"
        result = await engine.execute("python", code)
        assert result.status == ExecutionStatus.RUNTIME_ERROR
        assert len(result.error_output) == settings.max_diagnostic_length

    async def test_time_limit(self, engine: ExecutionEngine) -> None:
        result = await engine.execute("python", "while True: pass", time_limit_ms=300)
        assert result.status == ExecutionStatus.TIME_LIMIT
        assert result.runtime_ms == 300


class TestWorkspaceCleanup:
    async def test_nothing_left_after_success(self, engine: ExecutionEngine, scratch_root: Path) -> None:
        await engine.execute("python", "open('scratch.txt', 'w').write('x'); print(1)")
        assert workspace_entries(scratch_root) == []

    async def test_nothing_left_after_failure(self, engine: ExecutionEngine, scratch_root: Path) -> None:
        await engine.execute("python", "import sys; sys.exit(1)")
        await engine.execute("pychecked", "def broken(:")
        assert workspace_entries(scratch_root) == []

    async def test_destroyed_when_caller_raises(self, engine: ExecutionEngine, scratch_root: Path) -> None:
        with pytest.raises(RuntimeError):
            async with engine.prepare("python", "print(1)") as program:
                assert program.workspace.root_path.exists()
                raise RuntimeError("caller failure")
        assert workspace_entries(scratch_root) == []

    async def test_unsupported_language_allocates_nothing(self, engine: ExecutionEngine,
                                                          scratch_root: Path) -> None:
        with pytest.raises(UnsupportedLanguageError):
            await engine.execute("brainfuck", "+++")
        assert workspace_entries(scratch_root) == []


class TestCompile:
    async def test_compile_error_skips_run(self, engine: ExecutionEngine, runner: CountingRunner) -> None:
        result = await engine.execute("pychecked", "print('never'\n")
        assert result.status == ExecutionStatus.COMPILE_ERROR
        assert "SyntaxError" in result.error_output
        assert runner.compile_count == 1
        assert runner.run_count == 0

    async def test_diagnostics_hide_workspace_path(self, engine: ExecutionEngine,
                                                   scratch_root: Path) -> None:
        result = await engine.execute("pychecked", "def broken(:")
        assert str(scratch_root) not in result.error_output

    async def test_compile_once_run_many(self, engine: ExecutionEngine, runner: CountingRunner) -> None:
        async with engine.prepare("pychecked", "print(input()[::-1])") as program:
            assert program.ready
            outputs = [(await program.run(text)).output.strip() for text in ("abc", "xy", "z")]

        assert outputs == ["cba", "yx", "z"]
        assert runner.compile_count == 1
        assert runner.run_count == 3

    async def test_failed_preparation_repeats_failure(self, engine: ExecutionEngine,
                                                      runner: CountingRunner) -> None:
        async with engine.prepare("pychecked", "x = (") as program:
            assert not program.ready
            first = await program.run("1")
            second = await program.run("2")
        assert first is second
        assert first.status == ExecutionStatus.COMPILE_ERROR
        assert runner.run_count == 0

    @requires_gcc
    async def test_c_program(self, settings: Settings) -> None:
        engine = ExecutionEngine.from_settings(settings, LanguageRegistry([C]))
        code = '#include <stdio.h>\nint main() { int a, b; scanf("%d %d", &a, &b); printf("%d\\n", a + b); return 0; }\n'
        result = await engine.execute("c", code, "2 3")
        assert result.status == ExecutionStatus.SUCCESS
        assert result.output.strip() == "5"

    @requires_gcc
    async def test_c_syntax_error(self, settings: Settings) -> None:
        engine = ExecutionEngine.from_settings(settings, LanguageRegistry([C]))
        result = await engine.execute("c", "int main() { return 0 }")
        assert result.status == ExecutionStatus.COMPILE_ERROR
        assert "error" in result.error_output


class TestLimits:
    def test_defaults_from_language(self, engine: ExecutionEngine) -> None:
        language = engine.registry.lookup("python")
        limits = engine.resolve_limits(language)
        assert limits.time_limit_ms == 5000
        assert limits.memory_limit_kb == 128 * 1024

    def test_requested_limits_are_clamped(self, engine: ExecutionEngine, settings: Settings) -> None:
        language = engine.registry.lookup("python")
        limits = engine.resolve_limits(language, 10 ** 9, 10 ** 9)
        assert limits.time_limit_ms == settings.max_execution_time_ms
        assert limits.memory_limit_kb == settings.max_memory_limit_kb

    def test_smaller_requests_win(self, engine: ExecutionEngine) -> None:
        language = engine.registry.lookup("python")
        limits = engine.resolve_limits(language, 250, 32 * 1024)
        assert (limits.time_limit_ms, limits.memory_limit_kb) == (250, 32 * 1024)

    def test_environment_is_confined(self, engine: ExecutionEngine) -> None:
        language = engine.registry.lookup("python")
        workspace = engine.workspaces.create_workspace(language)
        try:
            env = engine.build_env(language, workspace)
        finally:
            engine.workspaces.destroy(workspace)
        assert env["TMPDIR"] == str(workspace.root_path)
        assert env["PYTHONIOENCODING"] == "UTF-8"
        assert "PATH" in env
