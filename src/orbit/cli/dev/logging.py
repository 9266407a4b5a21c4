"""Centralized logging for `orbit dev` (console routing and optional buffering)."""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict
from typing_extensions import override

from orbit.models import LogChannel, LogEntry
from orbit.utils import PrefixedLogHandler

LogBuffer: TypeAlias = deque[LogEntry]


class DevLogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    CONTROLLER = "controller"
    BUILDER = "builder"
    LAUNCHER = "launcher"
    PROCESS_CONTROL = "process_control"
    WATCHER = "watcher"
    REPORTER = "reporter"


_COMPONENT_DEFAULT_CHANNEL: dict[DevLogComponent, LogChannel] = {
    DevLogComponent.CONTROLLER: LogChannel.ORBIT,
    DevLogComponent.BUILDER: LogChannel.ORBIT,
    DevLogComponent.LAUNCHER: LogChannel.ORBIT,
    DevLogComponent.PROCESS_CONTROL: LogChannel.ORBIT,
    DevLogComponent.WATCHER: LogChannel.ORBIT,
    DevLogComponent.REPORTER: LogChannel.ORBIT,
}


class _DevLogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    buffer: LogBuffer | None = None
    configured: bool = False


_STATE = _DevLogState()


def _now_timestamp(created: float | None = None) -> str:
    t = time.localtime(created if created is not None else time.time())
    return time.strftime("%Y-%m-%d %H:%M:%S", t)


class _BufferedLogHandler(logging.Handler):
    buffer_component: DevLogComponent
    buffer_channel: LogChannel

    def __init__(self, *, channel: LogChannel, component: DevLogComponent):
        super().__init__()
        self.buffer_channel = channel
        self.buffer_component = component

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            if _STATE.buffer is None:
                return
            _STATE.buffer.append(
                LogEntry(
                    timestamp=_now_timestamp(record.created),
                    level=record.levelname,
                    channel=self.buffer_channel,
                    component=self.buffer_component.value,
                    content=self.format(record),
                )
            )
        except Exception:
            self.handleError(record)


def configure_dev_logging(
    *, verbose: bool = False, buffer: LogBuffer | None = None, console: bool = True
) -> None:
    """Configure all dev loggers.

    Args:
        verbose: Log at DEBUG instead of INFO
        buffer: Optional in-memory buffer receiving every record as a LogEntry
        console: Whether to print records through the shared rich console
    """
    _STATE.buffer = buffer
    level = logging.DEBUG if verbose else logging.INFO

    for component in DevLogComponent:
        channel = _COMPONENT_DEFAULT_CHANNEL.get(component, LogChannel.ORBIT)
        logger = logging.getLogger(f"orbit.dev.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        if console:
            handler: logging.Handler = PrefixedLogHandler(
                f"[{channel.value}]", "bright_blue"
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(handler)
        if buffer is not None:
            buffered = _BufferedLogHandler(channel=channel, component=component)
            buffered.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(buffered)
        logger.propagate = False

    _STATE.configured = True


def get_logger(component: DevLogComponent) -> logging.Logger:
    """Get a dev logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"orbit.dev.{component.value}")
    if not _STATE.configured:
        # Avoid "No handlers could be found" warnings in contexts that don't configure dev logging.
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
    return logger
