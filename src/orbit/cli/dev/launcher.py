"""Spawn the dev server from a built artifact and classify its output.

Output is captured until the readiness predicate matches the accumulated
stdout. Before that, stderr is buffered so it can be shown if the server never
becomes ready; afterwards both streams are passed through line by line.
"""

from __future__ import annotations

import asyncio
import codecs
import time
from collections.abc import AsyncIterator, Callable, Sequence

from orbit.cli.dev.errors import SpawnError
from orbit.cli.dev.logging import DevLogComponent, get_logger
from orbit.cli.dev.process_control import get_pgid_safe, new_process_group_kwargs
from orbit.cli.dev.reporter import StatusReporter
from orbit.models import (
    Artifact,
    DevConfig,
    ExitedCleanly,
    ExitedWithError,
    LaunchOutcome,
    Ready,
    ServerProcessHandle,
)
from orbit.utils import build_child_env

ReadinessPredicate = Callable[[str], bool]
OutcomeCallback = Callable[[ServerProcessHandle, LaunchOutcome], None]

SLOW_BUILD_MESSAGE = "Still stabilizing... (the first orbit takes longer)"

logger = get_logger(DevLogComponent.LAUNCHER)


def banner_predicate(markers: Sequence[str]) -> ReadinessPredicate:
    """Readiness = any marker appears in the buffered stdout."""
    frozen = tuple(markers)

    def is_ready(buffered_output: str) -> bool:
        return any(marker in buffered_output for marker in frozen)

    return is_ready


def strip_banner_lines(output: str, banner_markers: Sequence[str]) -> list[str]:
    """Non-empty lines of `output` that are not part of the startup banner."""
    return [
        line
        for line in output.split("\n")
        if line.strip() and not any(marker in line for marker in banner_markers)
    ]


async def _decoded_chunks(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield UTF-8 text from `stream`; characters split across reads stay whole."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


class _LineSplitter:
    """Turns stream chunks into complete lines, keeping the partial tail."""

    def __init__(self) -> None:
        self._buffer: str = ""

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines[-1]
        return [line.rstrip("\r") for line in lines[:-1]]

    def flush(self) -> list[str]:
        tail, self._buffer = self._buffer, ""
        return [tail.rstrip("\r")] if tail.strip() else []


class _ServerRun:
    """Per-process output state, driven by the launcher's monitor task."""

    def __init__(self, handle: ServerProcessHandle) -> None:
        self.handle: ServerProcessHandle = handle
        self.stdout_buffer: str = ""
        self.build_logs: str = ""
        self.stdout_lines: _LineSplitter = _LineSplitter()
        self.stderr_lines: _LineSplitter = _LineSplitter()


class ProcessLauncher:
    """Starts the server and reports Ready / ExitedCleanly / ExitedWithError."""

    def __init__(
        self,
        config: DevConfig,
        reporter: StatusReporter,
        *,
        is_ready: ReadinessPredicate | None = None,
        is_killing: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config: DevConfig = config
        self._reporter: StatusReporter = reporter
        self._is_ready: ReadinessPredicate = is_ready or banner_predicate(
            config.ready_markers
        )
        self._is_killing: Callable[[], bool] = is_killing or (lambda: False)
        self._clock: Callable[[], float] = clock
        self._first_boot: bool = True
        self._tasks: set[asyncio.Task[None]] = set()

    async def launch(
        self,
        artifact: Artifact,
        *,
        retry_count: int = 0,
        on_outcome: OutcomeCallback,
    ) -> ServerProcessHandle:
        """Spawn the server in `artifact.server_dir`.

        Raises:
            SpawnError: If the OS refuses to create the process
        """
        command = list(self._config.server_command)
        env = build_child_env(
            self._config.server_env, env_file=artifact.root / self._config.env_file
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=artifact.server_dir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **new_process_group_kwargs(),
            )
        except OSError as e:
            raise SpawnError(f"Failed to start `{command[0]}`: {e}", command) from e

        handle = ServerProcessHandle(
            process,
            started_at=self._clock(),
            retry_count=retry_count,
            pgid=get_pgid_safe(process.pid),
        )
        logger.debug(f"Started server pid={handle.pid} (attempt {retry_count})")

        task = asyncio.create_task(self._monitor(_ServerRun(handle), on_outcome))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def aclose(self) -> None:
        """Cancel and await outstanding monitor tasks."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _monitor(self, run: _ServerRun, on_outcome: OutcomeCallback) -> None:
        handle = run.handle
        process = handle.process
        slow_timer = asyncio.get_running_loop().call_later(
            self._config.slow_build_threshold, self._on_slow_build, handle
        )
        try:
            assert process.stdout is not None and process.stderr is not None, (
                "stdout and stderr must not be None"
            )
            await asyncio.gather(
                self._read_stdout(run, process.stdout, on_outcome),
                self._read_stderr(run, process.stderr),
            )
            returncode = await process.wait()
        finally:
            slow_timer.cancel()

        self._flush_tails(run)
        handle.mark_closed(returncode)

        if handle.stopping or self._is_killing():
            logger.debug(f"Server pid={handle.pid} stopped (code {returncode})")
            return

        outcome: LaunchOutcome
        if returncode == 0:
            outcome = ExitedCleanly()
        else:
            outcome = ExitedWithError(
                code=handle.exit_code, logs=run.build_logs, was_ready=handle.ready
            )
        on_outcome(handle, outcome)

    def _on_slow_build(self, handle: ServerProcessHandle) -> None:
        if handle.ready or handle.stopping or self._is_killing():
            return
        self._reporter.start_indeterminate_progress(SLOW_BUILD_MESSAGE)

    async def _read_stdout(
        self,
        run: _ServerRun,
        stream: asyncio.StreamReader,
        on_outcome: OutcomeCallback,
    ) -> None:
        async for text in _decoded_chunks(stream):
            if run.handle.ready:
                for line in run.stdout_lines.feed(text):
                    self._reporter.log(line)
                continue

            run.stdout_buffer += text
            if self._is_ready(run.stdout_buffer):
                run.handle.ready = True
                self._echo_startup_output(run)
                if not run.handle.stopping:
                    on_outcome(run.handle, Ready())

    async def _read_stderr(self, run: _ServerRun, stream: asyncio.StreamReader) -> None:
        async for text in _decoded_chunks(stream):
            if run.handle.ready:
                for line in run.stderr_lines.feed(text):
                    self._reporter.log(line, error=True)
            else:
                run.build_logs += text

    def _echo_startup_output(self, run: _ServerRun) -> None:
        buffered, run.stdout_buffer = run.stdout_buffer, ""
        # A trailing partial line is completed by later output
        complete, _, tail = buffered.rpartition("\n")
        run.stdout_lines.feed(tail)
        if self._first_boot:
            self._first_boot = False
            lines = [line for line in complete.split("\n") if line.strip()]
        else:
            lines = strip_banner_lines(complete, self._config.banner_markers)
        for line in lines:
            self._reporter.log(line)

    def _flush_tails(self, run: _ServerRun) -> None:
        if not run.handle.ready:
            return
        for line in run.stdout_lines.flush():
            self._reporter.log(line)
        for line in run.stderr_lines.flush():
            self._reporter.log(line, error=True)
