"""Human-readable status stream for the dev loop (spinner and log lines)."""

from __future__ import annotations

import time
from typing import Protocol

from rich.console import Console
from rich.markup import escape
from rich.status import Status

from orbit.cli.dev.logging import DevLogComponent, get_logger
from orbit.utils import console as default_console
from orbit.utils import err_console, format_elapsed_ms

logger = get_logger(DevLogComponent.REPORTER)


class StatusReporter(Protocol):
    """Presentational collaborator driven by the dev loop controller."""

    def start_indeterminate_progress(self, label: str) -> None: ...

    def stop_progress(self, success: bool = True, label: str = "") -> None: ...

    def log(self, line: str, *, error: bool = False) -> None: ...


class RichStatusReporter:
    """Spinner plus ✔/✖ result lines rendered through rich."""

    def __init__(
        self,
        console: Console | None = None,
        error_console: Console | None = None,
        spinner: str = "dots",
    ) -> None:
        self._console: Console = console or default_console
        self._error_console: Console = error_console or err_console
        self._spinner: str = spinner
        self._status: Status | None = None
        self._started_at: float | None = None

    def start_indeterminate_progress(self, label: str) -> None:
        text = f"[bright_black]{escape(label)}[/bright_black]"
        if self._status is not None:
            # Keep the original start time so the final message shows total wait
            self._status.update(text)
            return
        self._started_at = time.perf_counter()
        self._status = self._console.status(text, spinner=self._spinner)
        self._status.start()

    def stop_progress(self, success: bool = True, label: str = "") -> None:
        started_at = self._started_at
        if self._status is not None:
            self._status.stop()
            self._status = None
        self._started_at = None
        if not label:
            return
        elapsed = f" ({format_elapsed_ms(started_at)})" if started_at else ""
        if success:
            self._console.print(f"  [green]✔ {escape(label)}[/green]{elapsed}")
        else:
            self._console.print(f"  [red]✖ {escape(label)}[/red]{elapsed}")

    def log(self, line: str, *, error: bool = False) -> None:
        if error:
            self._error_console.print(escape(line), highlight=False)
        else:
            self._console.print(escape(line), highlight=False)


class SafeStatusReporter:
    """Wraps a reporter so rendering failures are logged, never raised."""

    def __init__(self, inner: StatusReporter) -> None:
        self.inner: StatusReporter = inner

    def start_indeterminate_progress(self, label: str) -> None:
        try:
            self.inner.start_indeterminate_progress(label)
        except Exception as e:
            logger.warning(f"Status rendering failed: {e}")

    def stop_progress(self, success: bool = True, label: str = "") -> None:
        try:
            self.inner.stop_progress(success, label)
        except Exception as e:
            logger.warning(f"Status rendering failed: {e}")

    def log(self, line: str, *, error: bool = False) -> None:
        try:
            self.inner.log(line, error=error)
        except Exception as e:
            logger.warning(f"Status rendering failed: {e}")
