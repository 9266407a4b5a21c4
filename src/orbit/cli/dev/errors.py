"""Error taxonomy for the dev loop.

Crashes and clean exits of the server are not raised; they arrive as
`ExitedWithError` / `ExitedCleanly` outcomes from the launcher.
"""

from __future__ import annotations


class DevLoopError(Exception):
    """Base class for dev loop failures that are reported, never fatal."""


class BuildError(DevLoopError):
    """The builder failed; reported with its captured output, not retried."""

    def __init__(self, message: str, logs: str = "") -> None:
        super().__init__(message)
        self.message: str = message
        self.logs: str = logs


class SpawnError(DevLoopError):
    """The OS refused to create the server process."""

    def __init__(self, message: str, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.message: str = message
        self.command: list[str] = list(command or [])
