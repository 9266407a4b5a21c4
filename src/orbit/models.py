"""Centralized Pydantic models, enums, and type aliases for orbit."""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from orbit.constants import (
    BANNER_MARKERS,
    CRASH_DETECTION_WINDOW,
    DEBOUNCE_DELAY,
    DEFAULT_ENV_FILE,
    DEFAULT_SERVER_COMMAND,
    DEFAULT_SERVER_DIR,
    DEFAULT_SERVER_ENV,
    DEFAULT_WATCH_PATHS,
    DEV_CONFIG_FILENAME,
    KILL_GRACE,
    KILL_TIMEOUT,
    MAX_RETRY_ATTEMPTS,
    ORBIT_DIR_NAME,
    READY_MARKERS,
    RETRY_WAIT_TIME,
    SETTLE_DELAY,
    SLOW_BUILD_THRESHOLD,
)


# === Enums ===


class ChangeKind(str, Enum):
    """Kind of filesystem change reported by the watcher."""

    added = "added"
    modified = "modified"
    deleted = "deleted"


class CycleStatus(str, Enum):
    """Lifecycle of a single build-then-restart cycle."""

    PENDING = "pending"
    BUILDING = "building"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DevLoopState(str, Enum):
    """States of the dev loop controller."""

    IDLE = "idle"
    BUILDING = "building"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    RETRYING = "retrying"
    SHUTTING_DOWN = "shutting_down"


class LogChannel(str, Enum):
    """Logical log channel for dev logging."""

    ORBIT = "orbit"


TriggerReason = Literal["change", "manual", "retry"]


# === Watch / cycle models ===


class WatchEvent(BaseModel):
    """A single filesystem change, consumed immediately by the debouncer."""

    path: Path
    kind: ChangeKind
    timestamp: float = Field(default_factory=time.monotonic)


class CycleTrigger(BaseModel):
    """Why a build cycle was started."""

    reason: TriggerReason
    event: WatchEvent | None = None

    @classmethod
    def manual(cls) -> CycleTrigger:
        return cls(reason="manual")

    @classmethod
    def retry(cls) -> CycleTrigger:
        return cls(reason="retry")

    @classmethod
    def from_event(cls, event: WatchEvent | None) -> CycleTrigger:
        if event is None:
            return cls.manual()
        return cls(reason="change", event=event)


class BuildCycle(BaseModel):
    """One full build-then-restart sequence."""

    id: int
    trigger: CycleTrigger
    status: CycleStatus = CycleStatus.PENDING


class RetryBudget(BaseModel):
    """Consecutive crash accounting for automatic restarts."""

    retry_count: int = 0
    first_crash_at: float | None = None

    def record_crash(self, now: float) -> None:
        if self.retry_count == 0:
            self.first_crash_at = now
        self.retry_count += 1

    def reset(self) -> None:
        self.retry_count = 0
        self.first_crash_at = None

    def exhausted(self, max_attempts: int) -> bool:
        return self.retry_count >= max_attempts


# === Build models ===


class AppEntry(BaseModel):
    """Entry point of the application sources."""

    path: Path
    is_ts: bool

    @property
    def language(self) -> str:
        return "TypeScript" if self.is_ts else "JavaScript"


class Artifact(BaseModel):
    """Result of a successful build: where and how to run the server."""

    root: Path
    server_dir: Path
    entry: AppEntry | None = None


# === Launch outcomes ===


class Ready(BaseModel):
    """The server printed its readiness banner."""

    kind: Literal["ready"] = "ready"


class ExitedCleanly(BaseModel):
    """The server exited with code 0 outside a deliberate shutdown."""

    kind: Literal["exited_cleanly"] = "exited_cleanly"
    code: int = 0


class ExitedWithError(BaseModel):
    """The server exited non-zero (or by signal, code None)."""

    kind: Literal["exited_with_error"] = "exited_with_error"
    code: int | None
    logs: str = ""
    was_ready: bool = False


LaunchOutcome: TypeAlias = Ready | ExitedCleanly | ExitedWithError


# === Runtime process state ===


class ServerProcessHandle:
    """The single live server process owned by the dev loop controller.

    `returncode` mirrors asyncio semantics (negative for signals); `exit_code`
    follows the OS interface contract and is None for signal terminations.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        started_at: float,
        retry_count: int = 0,
        pgid: int | None = None,
    ) -> None:
        self.process: asyncio.subprocess.Process = process
        self.pid: int = process.pid
        self.pgid: int | None = pgid
        self.started_at: float = started_at
        self.retry_count: int = retry_count
        self.returncode: int | None = None
        self.ready: bool = False
        self.stopping: bool = False
        self._closed: asyncio.Event = asyncio.Event()

    @property
    def exit_code(self) -> int | None:
        if self.returncode is None or self.returncode < 0:
            return None
        return self.returncode

    @property
    def has_exited(self) -> bool:
        return self._closed.is_set() or self.process.returncode is not None

    def mark_closed(self, returncode: int | None) -> None:
        self.returncode = returncode
        self._closed.set()

    async def wait_closed(self, timeout: float) -> bool:
        """Wait for the close event; return False if `timeout` elapsed first."""
        if self.has_exited:
            return True
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return self.has_exited

    def __repr__(self) -> str:
        return (
            f"ServerProcessHandle(pid={self.pid}, retry_count={self.retry_count}, "
            f"returncode={self.returncode})"
        )


# === Configuration ===


class DevConfig(BaseModel):
    """Complete configuration for the dev loop.

    This is the single source of truth for all dev loop settings. Defaults live
    in `orbit.constants` and are not repeated elsewhere.
    """

    app_dir: Path = Field(default_factory=Path.cwd)
    watch_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_WATCH_PATHS))
    env_file: str = DEFAULT_ENV_FILE

    debounce_delay: float = Field(default=DEBOUNCE_DELAY, ge=0)
    crash_window: float = Field(default=CRASH_DETECTION_WINDOW, ge=0)
    max_retry_attempts: int = Field(default=MAX_RETRY_ATTEMPTS, ge=0)
    retry_wait: float = Field(default=RETRY_WAIT_TIME, ge=0)
    settle_delay: float = Field(default=SETTLE_DELAY, ge=0)
    kill_timeout: float = Field(default=KILL_TIMEOUT, gt=0)
    kill_grace: float = Field(default=KILL_GRACE, ge=0)
    slow_build_threshold: float = Field(default=SLOW_BUILD_THRESHOLD, ge=0)

    server_dir: str = DEFAULT_SERVER_DIR
    server_command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SERVER_COMMAND), min_length=1
    )
    server_env: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_SERVER_ENV)
    )
    ready_markers: list[str] = Field(
        default_factory=lambda: list(READY_MARKERS), min_length=1
    )
    banner_markers: list[str] = Field(default_factory=lambda: list(BANNER_MARKERS))
    build_commands: list[list[str]] | None = None

    initial_build: bool = True

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    @property
    def env_path(self) -> Path:
        return self.app_dir / self.env_file

    def existing_watch_paths(self) -> list[Path]:
        """Watch paths that currently exist (watchfiles refuses missing ones)."""
        return [
            self.app_dir / p for p in self.watch_paths if (self.app_dir / p).exists()
        ]

    def is_env_file(self, path: Path) -> bool:
        return path.name == Path(self.env_file).name

    @classmethod
    def config_path(cls, app_dir: Path) -> Path:
        return app_dir / ORBIT_DIR_NAME / DEV_CONFIG_FILENAME

    @classmethod
    def read(cls, app_dir: Path, **overrides: Any) -> DevConfig:
        """Load `.orbit/dev.json` (if present) and apply non-None overrides.

        Raises:
            ValueError: If the config file is not valid
        """
        data: dict[str, Any] = {}
        file_path = cls.config_path(app_dir)
        if file_path.exists():
            try:
                data = cls.model_validate_json(file_path.read_text()).model_dump(
                    exclude_unset=True
                )
            except ValidationError as e:
                raise ValueError(f"Invalid dev config at {file_path}: {e}") from e
        data.update({k: v for k, v in overrides.items() if v is not None})
        data["app_dir"] = app_dir
        return cls.model_validate(data)


# === Log Models ===


class LogEntry(BaseModel):
    """Strongly typed log entry model for buffered dev logs."""

    timestamp: str
    level: str
    channel: LogChannel
    component: str
    content: str
