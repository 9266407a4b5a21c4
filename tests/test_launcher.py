from __future__ import annotations

import asyncio
import sys
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from orbit.cli.dev.errors import SpawnError
from orbit.cli.dev.launcher import (
    SLOW_BUILD_MESSAGE,
    ProcessLauncher,
    banner_predicate,
    strip_banner_lines,
)
from orbit.cli.dev.process_control import KillController
from orbit.models import (
    Artifact,
    DevConfig,
    ExitedCleanly,
    ExitedWithError,
    LaunchOutcome,
    Ready,
    ServerProcessHandle,
)

from conftest import RecordingReporter


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def python_server(tmp_path: Path, script: str, **updates) -> tuple[DevConfig, Artifact]:
    config = DevConfig(
        app_dir=tmp_path,
        server_dir=".",
        server_command=[sys.executable, "-u", "-c", script],
        server_env={"ORBIT_TEST": "1"},
        ready_markers=updates.pop("ready_markers", ["Titan server running"]),
        banner_markers=["Titan server running", "====="],
        **updates,
    )
    return config, Artifact(root=tmp_path, server_dir=tmp_path)


class Outcomes:
    def __init__(self) -> None:
        self.items: list[tuple[ServerProcessHandle, LaunchOutcome]] = []

    def __call__(self, handle: ServerProcessHandle, outcome: LaunchOutcome) -> None:
        self.items.append((handle, outcome))

    @property
    def kinds(self) -> list[type]:
        return [type(outcome) for _, outcome in self.items]


class TestReadiness:
    def test_banner_predicate_matches_any_marker(self) -> None:
        is_ready = banner_predicate(["Titan server running", "████"])
        assert is_ready("compiling...\nTitan server running on 3000")
        assert is_ready("████████╗")
        assert not is_ready("Compiling server v0.1.0")

    def test_strip_banner_lines(self) -> None:
        output = "=====\nTitan server running\nroutes: 3\n\n"
        assert strip_banner_lines(output, ["=====", "Titan server running"]) == [
            "routes: 3"
        ]


class TestProcessLauncher:
    @pytest.mark.asyncio
    async def test_reports_ready_and_passes_output_through(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        script = (
            "import os, time\n"
            "print('=====')\n"
            "print('Titan server running on 3000')\n"
            "time.sleep(0.2)\n"
            "print('GET / ' + os.environ['ORBIT_TEST'])\n"
            "time.sleep(30)\n"
        )
        config, artifact = python_server(tmp_path, script)
        launcher = ProcessLauncher(config, reporter)
        outcomes = Outcomes()

        handle = await launcher.launch(artifact, on_outcome=outcomes)
        try:
            await wait_until(lambda: Ready in outcomes.kinds)
            assert handle.ready
            await wait_until(lambda: "GET / 1" in reporter.lines)
            assert reporter.lines[:2] == ["=====", "Titan server running on 3000"]
        finally:
            await KillController(timeout=2.0, grace=0.5).kill(handle)
            await launcher.aclose()

        # A deliberate stop is not reported as an exit
        assert outcomes.kinds == [Ready]

    @pytest.mark.asyncio
    async def test_crash_before_ready_carries_stderr(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        script = (
            "import sys\n"
            "print('compiling...')\n"
            "sys.stderr.write('error[E0425]: cannot find value `x`\\n')\n"
            "sys.exit(101)\n"
        )
        config, artifact = python_server(tmp_path, script)
        launcher = ProcessLauncher(config, reporter)
        outcomes = Outcomes()

        await launcher.launch(artifact, retry_count=2, on_outcome=outcomes)
        await wait_until(lambda: bool(outcomes.items))
        await launcher.aclose()

        handle, outcome = outcomes.items[0]
        assert isinstance(outcome, ExitedWithError)
        assert outcome.code == 101
        assert not outcome.was_ready
        assert "cannot find value" in outcome.logs
        assert handle.retry_count == 2
        # Nothing from a server that never became ready is passed through
        assert reporter.lines == []

    @pytest.mark.asyncio
    async def test_clean_exit_is_reported(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        config, artifact = python_server(tmp_path, "print('bye')")
        launcher = ProcessLauncher(config, reporter)
        outcomes = Outcomes()

        await launcher.launch(artifact, on_outcome=outcomes)
        await wait_until(lambda: bool(outcomes.items))
        await launcher.aclose()

        assert outcomes.kinds == [ExitedCleanly]

    @pytest.mark.asyncio
    async def test_exit_while_killing_is_not_reported(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        config, artifact = python_server(tmp_path, "import sys; sys.exit(3)")
        launcher = ProcessLauncher(config, reporter, is_killing=lambda: True)
        outcomes = Outcomes()

        handle = await launcher.launch(artifact, on_outcome=outcomes)
        await wait_until(lambda: handle.has_exited)
        await launcher.aclose()

        assert outcomes.items == []

    @pytest.mark.asyncio
    async def test_slow_start_shows_progress(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        script = "import time\ntime.sleep(0.3)\nprint('Titan server running')\ntime.sleep(30)\n"
        config, artifact = python_server(tmp_path, script, slow_build_threshold=0.05)
        launcher = ProcessLauncher(config, reporter)
        outcomes = Outcomes()

        handle = await launcher.launch(artifact, on_outcome=outcomes)
        try:
            await wait_until(lambda: Ready in outcomes.kinds)
            assert SLOW_BUILD_MESSAGE in reporter.started
        finally:
            await KillController(timeout=2.0, grace=0.5).kill(handle)
            await launcher.aclose()

    @pytest.mark.asyncio
    async def test_custom_readiness_predicate(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        script = "import time\nprint('listening', flush=True)\ntime.sleep(30)\n"
        config, artifact = python_server(tmp_path, script)
        launcher = ProcessLauncher(
            config, reporter, is_ready=lambda output: "listening" in output
        )
        outcomes = Outcomes()

        handle = await launcher.launch(artifact, on_outcome=outcomes)
        try:
            await wait_until(lambda: Ready in outcomes.kinds)
        finally:
            await KillController(timeout=2.0, grace=0.5).kill(handle)
            await launcher.aclose()

    @pytest.mark.asyncio
    async def test_missing_executable_raises_spawn_error(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        config = DevConfig(
            app_dir=tmp_path, server_dir=".", server_command=["orbit-no-such-binary"]
        )
        launcher = ProcessLauncher(config, reporter)

        with pytest.raises(SpawnError) as exc_info:
            await launcher.launch(
                Artifact(root=tmp_path, server_dir=tmp_path), on_outcome=Outcomes()
            )
        assert exc_info.value.command == ["orbit-no-such-binary"]

    @pytest.mark.asyncio
    async def test_marker_split_across_reads_is_detected(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        """A multi-byte character cut between two reads still decodes whole."""
        script = (
            "import sys, time\n"
            "out = sys.stdout.buffer\n"
            "marker = '████████╗ ready\\n'.encode()\n"
            "out.write(b'x' * 4095 + marker[:1])\n"
            "out.flush()\n"
            "time.sleep(0.2)\n"
            "out.write(marker[1:])\n"
            "out.write('GET / ✓\\n'.encode()[:7])\n"
            "out.flush()\n"
            "time.sleep(0.2)\n"
            "out.write('GET / ✓\\n'.encode()[7:])\n"
            "out.flush()\n"
            "time.sleep(30)\n"
        )
        config, artifact = python_server(tmp_path, script, ready_markers=["████████╗"])
        launcher = ProcessLauncher(config, reporter)
        outcomes = Outcomes()

        handle = await launcher.launch(artifact, on_outcome=outcomes)
        try:
            await wait_until(lambda: Ready in outcomes.kinds)
            assert handle.ready
            await wait_until(lambda: "GET / ✓" in reporter.lines)
            assert reporter.lines == ["x" * 4095 + "████████╗ ready", "GET / ✓"]
            assert not any("\ufffd" in line for line in reporter.lines)
        finally:
            await KillController(timeout=2.0, grace=0.5).kill(handle)
            await launcher.aclose()

    @pytest.mark.asyncio
    async def test_banner_is_hidden_after_first_boot(
        self, tmp_path: Path, reporter: RecordingReporter
    ) -> None:
        """The first boot shows the banner; restarts only show the useful lines."""
        script = (
            "import sys, time\n"
            "sys.stdout.write('=====\\nTitan server running\\nroutes: 3\\n')\n"
            "sys.stdout.flush()\n"
            "time.sleep(30)\n"
        )
        config, artifact = python_server(tmp_path, script)
        launcher = ProcessLauncher(config, reporter)
        killer = KillController(timeout=2.0, grace=0.5)

        first_outcomes = Outcomes()
        first = await launcher.launch(artifact, on_outcome=first_outcomes)
        try:
            await wait_until(lambda: Ready in first_outcomes.kinds)
            await wait_until(lambda: "routes: 3" in reporter.lines)
            assert reporter.lines == ["=====", "Titan server running", "routes: 3"]
        finally:
            await killer.kill(first)

        seen = len(reporter.lines)
        second_outcomes = Outcomes()
        second = await launcher.launch(artifact, retry_count=1, on_outcome=second_outcomes)
        try:
            await wait_until(lambda: Ready in second_outcomes.kinds)
            await wait_until(lambda: "routes: 3" in reporter.lines[seen:])
            assert reporter.lines[seen:] == ["routes: 3"]
        finally:
            await killer.kill(second)
            await launcher.aclose()
