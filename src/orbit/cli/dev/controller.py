"""The dev loop state machine.

One DevLoopController owns everything mutable about a dev session: the current
server handle, the in-flight build cycle, the retry budget, and the coalesced
pending trigger. A single driver task consumes an internal event queue
(debounced triggers and launch outcomes) and awaits builds, kills and backoff
waits inline, so two cycles can never overlap.

States::

    Idle -> Building -> Starting -> Running
    Running/Starting -> Crashed -> Retrying -> Building
    Crashed -> Idle            (late exit, or retry budget exhausted)
    any -> ShuttingDown        (SIGINT / SIGTERM)
"""

from __future__ import annotations

import asyncio
import itertools
import signal
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, ClassVar, Protocol

from pydantic import BaseModel, ConfigDict

from orbit.cli.dev.builder import Builder, CommandBuilder
from orbit.cli.dev.debouncer import Debouncer
from orbit.cli.dev.errors import BuildError, SpawnError
from orbit.cli.dev.launcher import OutcomeCallback, ProcessLauncher
from orbit.cli.dev.logging import DevLogComponent, get_logger
from orbit.cli.dev.process_control import KillController
from orbit.cli.dev.reporter import RichStatusReporter, SafeStatusReporter, StatusReporter
from orbit.cli.dev.watcher import watch_paths
from orbit.models import (
    Artifact,
    BuildCycle,
    CycleStatus,
    CycleTrigger,
    DevConfig,
    DevLoopState,
    ExitedWithError,
    LaunchOutcome,
    Ready,
    RetryBudget,
    ServerProcessHandle,
    WatchEvent,
)

logger = get_logger(DevLogComponent.CONTROLLER)

BUILDING_LABEL = "Preparing runtime..."
BUILD_FAILED_LABEL = "Failed to prepare runtime"
STARTING_LABEL = "Stabilizing your app on its orbit..."
READY_LABEL = "Your app is now orbiting Titan Planet"
SPAWN_FAILED_LABEL = "Failed to start orbit"
CRASHED_LABEL = "Orbit stabilization failed"

# States in which a cycle is in flight; new triggers are coalesced, not run.
_IN_FLIGHT = frozenset(
    {DevLoopState.BUILDING, DevLoopState.STARTING, DevLoopState.RETRYING}
)
# States in which a pending trigger may start the next cycle.
_QUIESCENT = frozenset({DevLoopState.IDLE, DevLoopState.RUNNING})


class Launcher(Protocol):
    """What the controller needs from a process launcher."""

    async def launch(
        self, artifact: Artifact, *, retry_count: int = 0, on_outcome: OutcomeCallback
    ) -> ServerProcessHandle: ...

    async def aclose(self) -> None: ...


class _TriggerEvent(BaseModel):
    trigger: CycleTrigger


class _OutcomeEvent(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    handle: ServerProcessHandle
    outcome: LaunchOutcome


class DevLoopController:
    """Sequences Debouncer -> KillController -> Builder -> ProcessLauncher."""

    def __init__(
        self,
        config: DevConfig,
        *,
        builder: Builder | None = None,
        reporter: StatusReporter | None = None,
        launcher: Launcher | None = None,
        kill_controller: KillController | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config: DevConfig = config
        self._clock: Callable[[], float] = clock
        self._reporter: StatusReporter = SafeStatusReporter(
            reporter or RichStatusReporter()
        )
        self._builder: Builder = builder or CommandBuilder(config)
        self._kill_controller: KillController = kill_controller or KillController(
            timeout=config.kill_timeout, grace=config.kill_grace
        )
        self._launcher: Launcher = launcher or ProcessLauncher(
            config,
            self._reporter,
            is_killing=lambda: self._kill_controller.is_killing,
            clock=clock,
        )

        self._state: DevLoopState = DevLoopState.IDLE
        self._handle: ServerProcessHandle | None = None
        self._cycle: BuildCycle | None = None
        self._cycle_ids: itertools.count[int] = itertools.count(1)
        self._budget: RetryBudget = RetryBudget()
        self._pending: CycleTrigger | None = None
        self._window_timer: asyncio.TimerHandle | None = None
        self._events: asyncio.Queue[_TriggerEvent | _OutcomeEvent] = asyncio.Queue()
        self._shutdown: asyncio.Event = asyncio.Event()
        self._debouncer: Debouncer = Debouncer(
            config.debounce_delay, self._on_debounced
        )

        self.cycles: list[BuildCycle] = []
        self.state_history: list[DevLoopState] = [self._state]

    # === Introspection ===

    @property
    def state(self) -> DevLoopState:
        return self._state

    @property
    def handle(self) -> ServerProcessHandle | None:
        return self._handle

    @property
    def retry_count(self) -> int:
        return self._budget.retry_count

    @property
    def current_cycle(self) -> BuildCycle | None:
        return self._cycle

    @property
    def pending_trigger(self) -> CycleTrigger | None:
        return self._pending

    # === Inputs ===

    def notify(self, event: WatchEvent) -> None:
        """Forward a filesystem event to the debouncer."""
        self._debouncer.notify(event)

    def request_cycle(self, trigger: CycleTrigger | None = None) -> None:
        """Queue a cycle without debouncing (initial build, manual restart)."""
        self._events.put_nowait(_TriggerEvent(trigger=trigger or CycleTrigger.manual()))

    def request_shutdown(self) -> None:
        if not self._shutdown.is_set():
            logger.debug("Shutdown requested")
        self._shutdown.set()

    # === Main loop ===

    async def run(self, *, watch: bool = True, install_signal_handlers: bool = True) -> None:
        """Run until a shutdown is requested, then stop the server."""
        loop = asyncio.get_running_loop()
        restore = self._install_signal_handlers(loop) if install_signal_handlers else None

        stop_watching = asyncio.Event()
        watcher_task: asyncio.Task[None] | None = None
        if watch:
            watcher_task = asyncio.create_task(self._watch(stop_watching))

        if self.config.initial_build:
            self.request_cycle(CycleTrigger.manual())

        driver = asyncio.create_task(self._drive())
        shutdown_wait = asyncio.create_task(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {driver, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if driver in done:
                driver.result()
        finally:
            shutdown_wait.cancel()
            # Cancels any build, backoff or readiness wait in progress
            driver.cancel()
            await asyncio.gather(driver, shutdown_wait, return_exceptions=True)
            stop_watching.set()
            if watcher_task is not None:
                watcher_task.cancel()
                await asyncio.gather(watcher_task, return_exceptions=True)
            await self._debouncer.aclose()
            if restore is not None:
                restore()
            await self._shut_down()

    async def _drive(self) -> None:
        while True:
            event = await self._events.get()
            if isinstance(event, _TriggerEvent):
                await self._on_trigger(event.trigger)
            else:
                await self._on_outcome(event.handle, event.outcome)

            while self._pending is not None and self._state in _QUIESCENT:
                trigger, self._pending = self._pending, None
                await self._start_cycle(trigger, retry_count=0)

    async def _watch(self, stop_event: asyncio.Event) -> None:
        try:
            await watch_paths(
                self.config.existing_watch_paths(), self.notify, stop_event=stop_event
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"File watcher stopped: {e}")

    async def _on_debounced(self, event: WatchEvent | None) -> None:
        self.request_cycle(CycleTrigger.from_event(event))

    # === Transitions ===

    async def _on_trigger(self, trigger: CycleTrigger) -> None:
        if self._state in _IN_FLIGHT:
            # Coalesce into the next cycle; never run two concurrently
            self._pending = trigger
            logger.debug(f"Cycle in flight ({self._state.value}); change queued")
            return
        await self._start_cycle(trigger, retry_count=0)

    async def _start_cycle(self, trigger: CycleTrigger, *, retry_count: int) -> None:
        self._announce(trigger)
        cycle = BuildCycle(id=next(self._cycle_ids), trigger=trigger)
        self._cycle = cycle
        self.cycles.append(cycle)

        # At most one server: the previous one is fully gone before building
        self._cancel_window_timer()
        killed = await self._kill_controller.kill(self._handle)
        self._handle = None
        if trigger.reason != "retry":
            self._budget.reset()
            if killed and self.config.settle_delay > 0:
                # Give the OS a moment to release file locks on the old binary
                await asyncio.sleep(self.config.settle_delay)

        self._set_state(DevLoopState.BUILDING)
        cycle.status = CycleStatus.BUILDING
        self._reporter.start_indeterminate_progress(BUILDING_LABEL)
        try:
            artifact = await self._builder.build(self.config.app_dir)
        except BuildError as e:
            self._fail_cycle(BUILD_FAILED_LABEL, e.message, logs=e.logs)
            return
        except Exception as e:
            self._fail_cycle(BUILD_FAILED_LABEL, f"Unexpected build failure: {e!r}")
            return
        self._reporter.stop_progress()

        self._set_state(DevLoopState.STARTING)
        self._reporter.start_indeterminate_progress(STARTING_LABEL)
        try:
            self._handle = await self._launcher.launch(
                artifact, retry_count=retry_count, on_outcome=self._post_outcome
            )
        except SpawnError as e:
            self._fail_cycle(SPAWN_FAILED_LABEL, e.message)
        except Exception as e:
            self._fail_cycle(SPAWN_FAILED_LABEL, f"Unexpected launch failure: {e!r}")

    async def _on_outcome(self, handle: ServerProcessHandle, outcome: LaunchOutcome) -> None:
        if handle is not self._handle or handle.stopping:
            logger.debug(f"Ignoring {outcome.kind} from stale server pid={handle.pid}")
            return

        if isinstance(outcome, Ready):
            self._set_state(DevLoopState.RUNNING)
            self._reporter.stop_progress(True, READY_LABEL)
            self._finish_cycle(CycleStatus.SUCCEEDED)
            self._arm_window_timer(handle)
            return

        self._cancel_window_timer()
        self._handle = None
        was_starting = self._state == DevLoopState.STARTING
        self._set_state(DevLoopState.CRASHED)
        if was_starting:
            self._reporter.stop_progress(False, CRASHED_LABEL)
            self._finish_cycle(CycleStatus.FAILED)
        if isinstance(outcome, ExitedWithError) and outcome.logs and not outcome.was_ready:
            self._dump_logs("Build Logs", outcome.logs)

        run_time = self._clock() - handle.started_at
        logger.warning(f"Server exited with code {outcome.code} after {run_time:.1f}s")

        if self._pending is not None:
            # A newer change supersedes automatic retries
            self._set_state(DevLoopState.IDLE)
            return
        if run_time >= self.config.crash_window:
            self._budget.reset()
            logger.info("Waiting for changes...")
            self._set_state(DevLoopState.IDLE)
            return
        if self._budget.exhausted(self.config.max_retry_attempts):
            logger.error(
                f"Server crashed {self._budget.retry_count + 1} times in a row; "
                "giving up until the next change"
            )
            self._set_state(DevLoopState.IDLE)
            return

        self._budget.record_crash(self._clock())
        self._set_state(DevLoopState.RETRYING)
        logger.warning(
            f"Server crash detected. Retrying in {self.config.retry_wait:g}s "
            f"(attempt {self._budget.retry_count}/{self.config.max_retry_attempts})"
        )
        await asyncio.sleep(self.config.retry_wait)
        await self._start_cycle(CycleTrigger.retry(), retry_count=self._budget.retry_count)

    async def _shut_down(self) -> None:
        self._set_state(DevLoopState.SHUTTING_DOWN)
        self._cancel_window_timer()
        self._reporter.stop_progress()
        if self._handle is not None and not self._handle.has_exited:
            logger.info("Stopping server...")
        await self._kill_controller.kill(self._handle)
        self._handle = None
        if self._cycle is not None:
            self._finish_cycle(CycleStatus.FAILED)
        await self._launcher.aclose()

    # === Helpers ===

    def _post_outcome(self, handle: ServerProcessHandle, outcome: LaunchOutcome) -> None:
        self._events.put_nowait(_OutcomeEvent(handle=handle, outcome=outcome))

    def _set_state(self, state: DevLoopState) -> None:
        if state != self._state:
            logger.debug(f"{self._state.value} -> {state.value}")
        self._state = state
        self.state_history.append(state)

    def _finish_cycle(self, status: CycleStatus) -> None:
        if self._cycle is not None:
            self._cycle.status = status
        self._cycle = None

    def _fail_cycle(self, label: str, message: str, logs: str = "") -> None:
        self._reporter.stop_progress(False, label)
        logger.error(message)
        if logs:
            self._dump_logs("Build Logs", logs)
        self._finish_cycle(CycleStatus.FAILED)
        self._set_state(DevLoopState.IDLE)
        logger.info("Waiting for changes...")

    def _dump_logs(self, title: str, logs: str) -> None:
        self._reporter.log(f"--- {title} ---")
        for line in logs.rstrip().split("\n"):
            self._reporter.log(line)
        self._reporter.log("-" * (len(title) + 8))

    def _announce(self, trigger: CycleTrigger) -> None:
        event = trigger.event
        if trigger.reason == "change" and event is not None:
            if self.config.is_env_file(event.path):
                logger.info("Env refreshed")
            else:
                logger.info(f"Change detected: {_display_path(event.path, self.config)}")
        elif trigger.reason == "retry":
            logger.info(f"Retrying server (attempt {self._budget.retry_count})...")

    def _arm_window_timer(self, handle: ServerProcessHandle) -> None:
        self._cancel_window_timer()
        remaining = self.config.crash_window - (self._clock() - handle.started_at)
        self._window_timer = asyncio.get_running_loop().call_later(
            max(0.0, remaining), self._on_window_elapsed, handle
        )

    def _cancel_window_timer(self) -> None:
        if self._window_timer is not None:
            self._window_timer.cancel()
            self._window_timer = None

    def _on_window_elapsed(self, handle: ServerProcessHandle) -> None:
        self._window_timer = None
        if (
            handle is self._handle
            and self._state == DevLoopState.RUNNING
            and not handle.has_exited
        ):
            if self._budget.retry_count:
                logger.debug("Server is stable; retry budget reset")
            self._budget.reset()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> Callable[[], None]:
        installed: list[int] = []
        previous: dict[int, Any] = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
                installed.append(sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                previous[sig] = signal.signal(
                    sig, lambda *_: loop.call_soon_threadsafe(self.request_shutdown)
                )

        def restore() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return restore


def _display_path(path: Path, config: DevConfig) -> str:
    try:
        return str(path.relative_to(config.app_dir))
    except ValueError:
        return str(path)
