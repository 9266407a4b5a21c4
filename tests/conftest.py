from __future__ import annotations

import asyncio
import itertools
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from orbit.cli.dev.errors import BuildError, SpawnError
from orbit.cli.dev.launcher import OutcomeCallback
from orbit.models import (
    Artifact,
    DevConfig,
    ExitedCleanly,
    ExitedWithError,
    Ready,
    ServerProcessHandle,
)


class RecordingReporter:
    """StatusReporter that records every call."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    def start_indeterminate_progress(self, label: str) -> None:
        self.events.append(("start", label))

    def stop_progress(self, success: bool = True, label: str = "") -> None:
        self.events.append(("stop", success, label))

    def log(self, line: str, *, error: bool = False) -> None:
        self.events.append(("log", line, error))

    @property
    def started(self) -> list[str]:
        return [e[1] for e in self.events if e[0] == "start"]

    @property
    def stopped(self) -> list[tuple[bool, str]]:
        return [(e[1], e[2]) for e in self.events if e[0] == "stop" and e[2]]

    @property
    def lines(self) -> list[str]:
        return [e[1] for e in self.events if e[0] == "log"]


class FakeBuilder:
    def __init__(self) -> None:
        self.calls: list[float] = []
        self.fail: bool = False
        self.delay: float = 0.0

    async def build(self, root: Path) -> Artifact:
        self.calls.append(time.monotonic())
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise BuildError("Build failed", logs="error: expected `;`\n  at app.ts:3")
        return Artifact(root=root, server_dir=root / "server")


class FakeLauncher:
    """Launcher whose servers follow a script of behaviors, one per launch.

    Behaviors: "ready", "crash" (exit 1 before ready), "exit" (exit 0 before
    ready), "hang" (never ready, never exits). The last entry repeats.
    """

    def __init__(self) -> None:
        self.script: list[str] = ["ready"]
        self.delay: float = 0.01
        self.launches: list[ServerProcessHandle] = []
        self.max_live: int = 0
        self.spawn_error: bool = False
        self.launch_error: Exception | None = None
        self.closed: bool = False
        self._pids = itertools.count(10_000)
        self._callbacks: dict[int, OutcomeCallback] = {}

    async def launch(
        self, artifact: Artifact, *, retry_count: int = 0, on_outcome: OutcomeCallback
    ) -> ServerProcessHandle:
        if self.spawn_error:
            raise SpawnError("Failed to start `cargo`: not found", ["cargo", "run"])
        if self.launch_error is not None:
            raise self.launch_error
        process = Mock()
        process.pid = next(self._pids)
        process.returncode = None
        handle = ServerProcessHandle(
            process, started_at=time.monotonic(), retry_count=retry_count
        )
        live = sum(1 for h in self.launches if not h.has_exited)
        self.max_live = max(self.max_live, live + 1)
        behavior = self.script[min(len(self.launches), len(self.script) - 1)]
        self.launches.append(handle)
        self._callbacks[handle.pid] = on_outcome
        asyncio.get_running_loop().call_later(
            self.delay, self._resolve, handle, behavior
        )
        return handle

    def _resolve(self, handle: ServerProcessHandle, behavior: str) -> None:
        if handle.has_exited:
            return
        on_outcome = self._callbacks[handle.pid]
        if behavior == "ready":
            handle.ready = True
            on_outcome(handle, Ready())
        elif behavior == "crash":
            handle.mark_closed(1)
            on_outcome(handle, ExitedWithError(code=1, logs="thread 'main' panicked"))
        elif behavior == "exit":
            handle.mark_closed(0)
            on_outcome(handle, ExitedCleanly())

    def crash(self, handle: ServerProcessHandle, code: int = 101) -> None:
        """Make a running server exit on its own."""
        handle.mark_closed(code)
        self._callbacks[handle.pid](
            handle, ExitedWithError(code=code, was_ready=handle.ready)
        )

    async def aclose(self) -> None:
        self.closed = True


class FakeTerminator:
    """Terminator that closes handles immediately unless told to ignore."""

    def __init__(self) -> None:
        self.terminated: list[int] = []
        self.killed: list[int] = []
        self.reaped: list[int] = []
        self.ignore_terminate: bool = False
        self.ignore_kill: bool = False

    def terminate(self, handle: ServerProcessHandle) -> None:
        self.terminated.append(handle.pid)
        if not self.ignore_terminate:
            handle.mark_closed(-15)

    def kill(self, handle: ServerProcessHandle) -> None:
        self.killed.append(handle.pid)
        if not self.ignore_kill:
            handle.mark_closed(-9)

    async def reap(self, handle: ServerProcessHandle, timeout: float) -> None:
        self.reaped.append(handle.pid)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def terminator() -> FakeTerminator:
    return FakeTerminator()


@pytest.fixture
def dev_config(tmp_path: Path) -> DevConfig:
    """Fast timings so controller tests finish in well under a second each."""
    (tmp_path / "app").mkdir()
    return DevConfig(
        app_dir=tmp_path,
        debounce_delay=0.05,
        crash_window=1.0,
        max_retry_attempts=3,
        retry_wait=0.05,
        settle_delay=0.0,
        kill_timeout=0.5,
        kill_grace=0.1,
    )
