import asyncio
import contextlib
import logging
import math
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import psutil

from codejudge.models import ExecutionResult, ExecutionStatus

if os.name == "posix":
    import resource

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
PIPE_DRAIN_TIMEOUT = 1.0
EXIT_POLL_INTERVAL = 0.005
SIGXCPU = getattr(signal, "SIGXCPU", None)

# Diagnostics printed by common runtimes when an allocation fails under RLIMIT_AS
OOM_MARKERS = (
    "MemoryError",
    "std::bad_alloc",
    "java.lang.OutOfMemoryError",
    "JavaScript heap out of memory",
    "memory allocation of",
    "Cannot allocate memory",
    "out of memory",
)


def _make_preexec(time_limit_ms: int, memory_limit_kb: int,
                  limit_address_space: bool) -> Optional[Callable[[], None]]:
    """Resource limits applied in the child between fork and exec (POSIX only)."""
    if os.name != "posix":
        return None
    cpu_seconds = int(math.ceil(time_limit_ms / 1000.0)) + 1
    memory_bytes = memory_limit_kb * 1024 if limit_address_space and memory_limit_kb > 0 else None

    def _preexec():
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        if memory_bytes is not None:
            resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))

    return _preexec


def describe_exit(exit_code: int) -> str:
    if exit_code < 0:
        try:
            name = signal.Signals(-exit_code).name
        except ValueError:
            name = f"signal {-exit_code}"
        return f"Process terminated by {name}"
    return f"Exit code: {exit_code}"


class ProcessHandle(object):
    """One spawned child, its process group and every descendant seen so far.

    Descendants are remembered across samples because a child that calls
    ``setsid`` leaves the group, and once the leader dies it is no longer
    reachable through the process tree either.

    Used as an async context manager: on exit everything known is killed,
    the child reaped with a bounded wait and its pipes closed, whatever
    happened inside the block.
    """

    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process
        self.killed = False
        self.descendants: Dict[int, psutil.Process] = {}
        try:
            self.leader = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            self.leader = None

    @classmethod
    async def spawn(cls, command: Sequence[str], cwd: Path, env: Optional[Dict[str, str]] = None,
                    preexec_fn: Optional[Callable[[], None]] = None) -> "ProcessHandle":
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=env,
            start_new_session=os.name == "posix",
            preexec_fn=preexec_fn,
        )
        return cls(process)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def track_descendants(self) -> List[psutil.Process]:
        """Record the leader's current descendants; returns every one recorded so far."""
        if self.leader is not None:
            try:
                for child in self.leader.children(recursive=True):
                    self.descendants.setdefault(child.pid, child)
            except psutil.Error:
                pass
        return list(self.descendants.values())

    async def wait(self, timeout: Optional[float] = None) -> int:
        """Wait for the child itself to exit.

        ``Process.wait`` also waits for every pipe to close, which a
        descendant holding stdout can delay forever, so the exit status is
        polled instead. Raises ``asyncio.TimeoutError`` if ``timeout``
        elapses first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self.process.returncode is None:
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError()
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        return self.process.returncode

    def kill(self):
        self.killed = True
        self.kill_group()

    def kill_group(self):
        descendants = self.track_descendants()
        if os.name == "posix":
            try:
                os.killpg(self.process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass  # group already gone
        elif self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        for proc in descendants:
            try:
                proc.kill()
            except psutil.Error:
                pass

    def close_pipes(self):
        # Lets the transport finish without waiting for EOF from a survivor
        self.process._transport.close()

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.process.returncode is None:
            self.kill()
        else:
            # Leader is gone; take down anything it left running
            self.kill_group()
        try:
            await self.wait(PIPE_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"[Runner] pid {self.pid} did not exit after SIGKILL")
        self.close_pipes()


class MemoryMonitor(object):
    """Samples resident memory of a process tree and kills it past the ceiling.

    Every sample also refreshes the handle's record of descendants.
    """

    def __init__(self, handle: ProcessHandle, limit_kb: int, interval_ms: int = 10):
        self.handle = handle
        self.limit_kb = limit_kb
        self.interval = interval_ms / 1000.0
        self.peak_kb = 0
        self.exceeded = False

    def sample(self) -> int:
        processes = self.handle.track_descendants()
        if self.handle.leader is not None:
            processes.append(self.handle.leader)
        total = 0
        for proc in processes:
            try:
                total += proc.memory_info().rss
            except psutil.Error:
                continue
        usage_kb = total // 1024
        self.peak_kb = max(self.peak_kb, usage_kb)
        return usage_kb

    async def watch(self):
        handle = self.handle
        while handle.returncode is None:
            usage_kb = self.sample()
            if self.limit_kb > 0 and usage_kb > self.limit_kb:
                self.exceeded = True
                logger.info(f"[Runner] pid {handle.pid} uses {usage_kb}KB > {self.limit_kb}KB, killing")
                handle.kill()
                return
            await asyncio.sleep(self.interval)


class BoundedBuffer(object):
    """Keeps the first ``limit`` bytes of a stream and drains the rest."""

    def __init__(self, limit: int):
        self.limit = limit
        self.data = bytearray()
        self.truncated = False

    async def pump(self, stream: asyncio.StreamReader):
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                return
            room = self.limit - len(self.data)
            if room > 0:
                self.data += chunk[:room]
            if len(chunk) > max(room, 0):
                self.truncated = True

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


async def _feed_stdin(stream: asyncio.StreamWriter, data: bytes):
    try:
        if data:
            stream.write(data)
            await stream.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("[Runner] Child closed stdin before consuming all input")
    finally:
        stream.close()


def looks_like_oom(error_output: str) -> bool:
    return any(marker in error_output for marker in OOM_MARKERS)


class ProcessRunner(object):
    def __init__(self, max_output_bytes: int = 1024 * 1024, memory_poll_interval_ms: int = 10):
        self.max_output_bytes = max_output_bytes
        self.memory_poll_interval_ms = memory_poll_interval_ms

    async def run(self, command: Sequence[str], working_dir: Path, stdin: Optional[str] = None,
                  time_limit_ms: int = 5000, memory_limit_kb: int = 0,
                  limit_address_space: bool = False,
                  env: Optional[Dict[str, str]] = None) -> ExecutionResult:
        """Run ``command`` once inside ``working_dir`` under the given limits.

        The call returns no later than ``time_limit_ms`` plus a few pipe drain
        grace periods, and kills every descendant it has seen before returning,
        including ones that moved to a session of their own.
        """
        preexec = _make_preexec(time_limit_ms, memory_limit_kb, limit_address_space)
        try:
            handle = await ProcessHandle.spawn(command, working_dir, env=env, preexec_fn=preexec)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"[Runner] Failed to start {command[0]}: {e}")
            return ExecutionResult(ExecutionStatus.INTERNAL_ERROR,
                                   error_output=f"Failed to start process: {Path(command[0]).name}")

        stdout = BoundedBuffer(self.max_output_bytes)
        stderr = BoundedBuffer(self.max_output_bytes)
        monitor = MemoryMonitor(handle, memory_limit_kb, self.memory_poll_interval_ms)
        timed_out = False

        async with handle:
            process = handle.process
            start_time = time.perf_counter()
            tasks = [
                asyncio.ensure_future(stdout.pump(process.stdout)),
                asyncio.ensure_future(stderr.pump(process.stderr)),
                asyncio.ensure_future(_feed_stdin(process.stdin, (stdin or "").encode("utf-8"))),
                asyncio.ensure_future(monitor.watch()),
            ]
            try:
                try:
                    await handle.wait(time_limit_ms / 1000.0)
                except asyncio.TimeoutError:
                    timed_out = True
                    handle.kill()
                    with contextlib.suppress(asyncio.TimeoutError):
                        await handle.wait(PIPE_DRAIN_TIMEOUT)
                elapsed_ms = int((time.perf_counter() - start_time) * 1000)
                handle.kill_group()

                _, pending = await asyncio.wait(tasks[:2], timeout=PIPE_DRAIN_TIMEOUT)
                if pending:
                    logger.warning(f"[Runner] Output pipes of pid {handle.pid} still open after exit")
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        return self._classify(handle, monitor, timed_out, elapsed_ms, time_limit_ms, stdout, stderr)

    @staticmethod
    def _classify(handle: ProcessHandle, monitor: MemoryMonitor, timed_out: bool, elapsed_ms: int,
                  time_limit_ms: int, stdout: BoundedBuffer, stderr: BoundedBuffer) -> ExecutionResult:
        output = stdout.text()
        error_output = stderr.text()
        exit_code = handle.returncode
        common = dict(output=output, memory_kb=monitor.peak_kb, output_truncated=stdout.truncated)

        if monitor.exceeded:
            return ExecutionResult(ExecutionStatus.MEMORY_LIMIT, error_output="Memory limit exceeded",
                                   exit_code=None, runtime_ms=elapsed_ms, **common)
        if timed_out:
            return ExecutionResult(ExecutionStatus.TIME_LIMIT, error_output="Time limit exceeded",
                                   exit_code=None, runtime_ms=time_limit_ms, **common)
        if SIGXCPU is not None and exit_code == -SIGXCPU:
            return ExecutionResult(ExecutionStatus.TIME_LIMIT, error_output="CPU time limit exceeded",
                                   exit_code=exit_code, runtime_ms=max(elapsed_ms, time_limit_ms), **common)
        if exit_code != 0:
            if looks_like_oom(error_output):
                return ExecutionResult(ExecutionStatus.MEMORY_LIMIT, error_output=error_output,
                                       exit_code=exit_code, runtime_ms=elapsed_ms, **common)
            return ExecutionResult(ExecutionStatus.RUNTIME_ERROR,
                                   error_output=error_output.strip() or describe_exit(exit_code),
                                   exit_code=exit_code, runtime_ms=elapsed_ms, **common)
        if elapsed_ms > time_limit_ms:
            return ExecutionResult(ExecutionStatus.TIME_LIMIT, error_output="Time limit exceeded",
                                   exit_code=exit_code, runtime_ms=elapsed_ms, **common)
        return ExecutionResult(ExecutionStatus.SUCCESS, error_output=error_output or None,
                               exit_code=exit_code, runtime_ms=elapsed_ms, **common)
