import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import AsyncIterator, Dict, Optional

from codejudge.config import Settings
from codejudge.exceptions import ResourceError
from codejudge.languages import LanguageConfig, LanguageRegistry, default_registry
from codejudge.models import ExecutionResult, ExecutionStatus
from codejudge.runner import ProcessRunner
from codejudge.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Limits:
    time_limit_ms: int
    memory_limit_kb: int


def internal_error(message: str) -> ExecutionResult:
    return ExecutionResult(ExecutionStatus.INTERNAL_ERROR, error_output=message)


class PreparedProgram(object):
    """A submission written (and compiled, if needed) into its workspace.

    ``run`` may be called any number of times; only the run step repeats.
    If preparation failed, every ``run`` returns that failure unchanged.
    """

    def __init__(self, engine: "ExecutionEngine", language: LanguageConfig,
                 workspace: Optional[Workspace], failure: Optional[ExecutionResult] = None,
                 label: str = ""):
        self.engine = engine
        self.language = language
        self.workspace = workspace
        self.failure = failure
        self.label = label

    @property
    def ready(self) -> bool:
        return self.failure is None

    async def run(self, stdin: Optional[str] = "", time_limit_ms: Optional[int] = None,
                  memory_limit_kb: Optional[int] = None) -> ExecutionResult:
        if self.failure is not None:
            return self.failure
        limits = self.engine.resolve_limits(self.language, time_limit_ms, memory_limit_kb)
        self.engine.workspaces.touch(self.workspace)
        result = await self.engine.runner.run(
            self.language.render_run(limits.memory_limit_kb),
            self.workspace.root_path,
            stdin=stdin,
            time_limit_ms=limits.time_limit_ms,
            memory_limit_kb=limits.memory_limit_kb,
            limit_address_space=self.language.limit_address_space,
            env=self.engine.build_env(self.language, self.workspace),
        )
        logger.debug(f"[Judge {self.label}] Run finished: {result.status.value}, "
                     f"{result.runtime_ms}ms, {result.memory_kb}KB")
        return self.engine.scrub(result, self.workspace)


class ExecutionEngine(object):
    def __init__(self, registry: LanguageRegistry, workspaces: WorkspaceManager,
                 runner: ProcessRunner, settings: Settings):
        self.registry = registry
        self.workspaces = workspaces
        self.runner = runner
        self.settings = settings

    @classmethod
    def from_settings(cls, settings: Settings,
                      registry: Optional[LanguageRegistry] = None) -> "ExecutionEngine":
        workspaces = WorkspaceManager(
            settings.workspace_root,
            sweep_every=settings.sweep_every_executions,
            max_age_ms=settings.max_workspace_age_ms,
        )
        runner = ProcessRunner(
            max_output_bytes=settings.max_output_bytes,
            memory_poll_interval_ms=settings.memory_poll_interval_ms,
        )
        return cls(registry or default_registry(), workspaces, runner, settings)

    def resolve_limits(self, language: LanguageConfig, time_limit_ms: Optional[int] = None,
                       memory_limit_kb: Optional[int] = None) -> Limits:
        time_limit = min(time_limit_ms or language.default_time_limit_ms,
                         self.settings.max_execution_time_ms)
        memory_limit = min(memory_limit_kb or language.default_memory_limit_kb,
                           self.settings.max_memory_limit_kb)
        return Limits(time_limit_ms=time_limit, memory_limit_kb=memory_limit)

    def build_env(self, language: LanguageConfig, workspace: Workspace) -> Dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": os.environ.get("HOME", str(workspace.root_path)),
            "TMPDIR": str(workspace.root_path),
        }
        env.update(language.environment())
        return env

    def scrub(self, result: ExecutionResult, workspace: Optional[Workspace]) -> ExecutionResult:
        """Strip workspace paths and cap diagnostics before they reach a user."""
        if not result.error_output:
            return result
        error_output = result.error_output
        if workspace is not None:
            root = str(workspace.root_path)
            error_output = error_output.replace(root + os.sep, "").replace(root, ".")
        error_output = error_output[:self.settings.max_diagnostic_length]
        if error_output == result.error_output:
            return result
        return replace(result, error_output=error_output)

    @asynccontextmanager
    async def prepare(self, language_id: str, code: str,
                      label: Optional[str] = None) -> AsyncIterator[PreparedProgram]:
        """Materialize ``code`` in a fresh workspace and compile it once.

        Raises ``UnsupportedLanguageError`` before anything is allocated.
        The workspace is destroyed when the block exits, on every path.
        """
        language = self.registry.lookup(language_id)
        workspace = None
        failure = None
        try:
            workspace = self.workspaces.create_workspace(language)
        except ResourceError as e:
            logger.error(f"[Judge {label or '-'}] {e}")
            failure = internal_error("Failed to allocate execution workspace")

        label = label or (workspace.id[:8] if workspace else "-")
        try:
            if workspace is not None:
                failure = await self._materialize(language, workspace, code, label)
            yield PreparedProgram(self, language, workspace, failure, label)
        finally:
            if workspace is not None:
                self.workspaces.destroy(workspace)

    async def execute(self, language_id: str, code: str, stdin: Optional[str] = "",
                      time_limit_ms: Optional[int] = None,
                      memory_limit_kb: Optional[int] = None) -> ExecutionResult:
        async with self.prepare(language_id, code) as program:
            return await program.run(stdin, time_limit_ms, memory_limit_kb)

    async def _materialize(self, language: LanguageConfig, workspace: Workspace, code: str,
                           label: str) -> Optional[ExecutionResult]:
        try:
            self.workspaces.write_source(workspace, code)
        except ResourceError as e:
            logger.error(f"[Judge {label}] {e}")
            return internal_error("Failed to write source file")
        if not language.requires_compile:
            return None
        return await self._compile(language, workspace, label)

    async def _compile(self, language: LanguageConfig, workspace: Workspace,
                       label: str) -> Optional[ExecutionResult]:
        logger.info(f"[Judge {label}] Compiling {language.id}...")
        command = language.render_compile()
        result = await self.runner.run(
            command,
            workspace.root_path,
            stdin=None,
            time_limit_ms=self.settings.compile_time_limit_ms,
            memory_limit_kb=self.settings.compile_memory_limit_kb,
            limit_address_space=False,
            env=self.build_env(language, workspace),
        )
        result = self.scrub(result, workspace)
        limit = self.settings.max_diagnostic_length

        if result.status == ExecutionStatus.INTERNAL_ERROR:
            return result
        if result.status == ExecutionStatus.TIME_LIMIT:
            message = f"Compilation timed out after {self.settings.compile_time_limit_ms}ms"
        elif result.status == ExecutionStatus.MEMORY_LIMIT:
            message = "Compiler exceeded its memory limit"
        elif result.status != ExecutionStatus.SUCCESS:
            message = (result.error_output or result.output or "Compilation failed").strip()
        elif workspace.artifact_path is not None and not workspace.artifact_path.exists():
            message = "Compiler produced no executable"
        else:
            logger.info(f"[Judge {label}] Compiled in {result.runtime_ms}ms")
            return None

        logger.info(f"[Judge {label}] Compile Error: {message[:200]}")
        return ExecutionResult(ExecutionStatus.COMPILE_ERROR, error_output=message[:limit],
                               exit_code=result.exit_code)
