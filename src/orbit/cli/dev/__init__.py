"""Dev loop for the orbit CLI."""

from orbit.cli.dev.builder import Builder, CommandBuilder
from orbit.cli.dev.controller import DevLoopController
from orbit.cli.dev.debouncer import Debouncer
from orbit.cli.dev.errors import BuildError, DevLoopError, SpawnError
from orbit.cli.dev.launcher import ProcessLauncher, banner_predicate
from orbit.cli.dev.process_control import KillController
from orbit.cli.dev.reporter import RichStatusReporter, StatusReporter
from orbit.models import DevConfig, DevLoopState

__all__ = [
    "BuildError",
    "Builder",
    "CommandBuilder",
    "Debouncer",
    "DevConfig",
    "DevLoopController",
    "DevLoopError",
    "DevLoopState",
    "KillController",
    "ProcessLauncher",
    "RichStatusReporter",
    "SpawnError",
    "StatusReporter",
    "banner_predicate",
]
