"""Shared pytest fixtures for codejudge tests."""

import dataclasses
import sys
from pathlib import Path
from typing import List

import pytest

from codejudge.config import Settings
from codejudge.executor import ExecutionEngine
from codejudge.judge import JudgeEngine
from codejudge.languages import PYTHON, LanguageConfig, LanguageRegistry
from codejudge.runner import ProcessRunner
from codejudge.workspace import WorkspaceManager

# ============================================================================
# Languages
# ============================================================================

# The host interpreter stands in for python3 so tests don't depend on PATH
HOST_PYTHON = dataclasses.replace(PYTHON, run_command=(sys.executable, "{source}"))

# A "compiled" language backed by py_compile: syntax errors surface as compile
# errors and the checked source is the artifact.
CHECKED_PYTHON = LanguageConfig(
    id="pychecked",
    display_name="Checked Python",
    file_extension="py",
    compile_command=(sys.executable, "-m", "py_compile", "{source}"),
    artifact_name="solution.py",
    run_command=(sys.executable, "{artifact}"),
)

SUM_PROGRAM = "a, b = map(int, input().split())\nprint(a + b)\n"
SUM_CASES = [("2 3", "5"), ("10 20", "30"), ("0 0", "0")]


class CountingRunner(ProcessRunner):
    """ProcessRunner that records every command it is asked to run."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.commands: List[List[str]] = []

    async def run(self, command, working_dir, *args, **kwargs):
        self.commands.append(list(command))
        return await super().run(command, working_dir, *args, **kwargs)

    @property
    def compile_count(self) -> int:
        return sum(1 for c in self.commands if "py_compile" in c)

    @property
    def run_count(self) -> int:
        return len(self.commands) - self.compile_count


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    return tmp_path / "scratch"


@pytest.fixture
def settings(tmp_path: Path, scratch_root: Path) -> Settings:
    return Settings(
        scratch_root=scratch_root,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'data' / 'test.db'}",
        sweep_every_executions=0,
        max_code_length=2000,
        max_input_size=1024,
        max_execution_time_ms=5000,
    )


@pytest.fixture
def registry() -> LanguageRegistry:
    return LanguageRegistry([HOST_PYTHON, CHECKED_PYTHON])


@pytest.fixture
def runner(settings: Settings) -> CountingRunner:
    return CountingRunner(max_output_bytes=settings.max_output_bytes)


@pytest.fixture
def engine(settings: Settings, registry: LanguageRegistry, runner: CountingRunner) -> ExecutionEngine:
    workspaces = WorkspaceManager(settings.workspace_root, max_age_ms=settings.max_workspace_age_ms)
    return ExecutionEngine(registry, workspaces, runner, settings)


@pytest.fixture
def judge_engine(engine: ExecutionEngine) -> JudgeEngine:
    return JudgeEngine(engine)


def workspace_entries(root: Path) -> List[Path]:
    return list(root.iterdir()) if root.exists() else []
