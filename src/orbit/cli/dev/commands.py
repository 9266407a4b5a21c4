"""Dev command for the orbit CLI."""

import asyncio
from pathlib import Path
from typing import Annotated

from rich.markup import escape
from typer import Argument, Exit, Option

from orbit import __version__
from orbit.cli.dev.builder import detect_app_entry, has_rust_actions
from orbit.cli.dev.controller import DevLoopController
from orbit.cli.dev.logging import configure_dev_logging
from orbit.models import DevConfig
from orbit.utils import console

DEV_MODE_TAG = "[ Dev Mode ]"


def describe_project(app_dir: Path) -> str:
    """Human-readable project type shown in the dev banner."""
    entry = detect_app_entry(app_dir)
    language = entry.language if entry is not None else "JavaScript"
    if has_rust_actions(app_dir):
        return f"Rust + {language} Actions"
    return f"{language} Actions"


def print_banner(config: DevConfig) -> None:
    console.print()
    console.print(
        f"[bold cyan]🪐 Orbit[/bold cyan]   [bright_black]v{__version__}[/bright_black]"
        f"   [yellow]{escape(DEV_MODE_TAG)}[/yellow]"
    )
    console.print(f"  [bright_black]Type:[/bright_black]       {describe_project(config.app_dir)}")
    console.print("  [bright_black]Hot Reload:[/bright_black] [green]Enabled[/green]")
    if config.env_path.exists():
        console.print(f"  [bright_black]Env:[/bright_black]        Loaded from {config.env_file}")
    console.print()


def dev(
    app_dir: Annotated[
        Path | None,
        Argument(
            help="The path to the app. If not provided, current working directory will be used"
        ),
    ] = None,
    debounce: Annotated[
        float | None, Option("--debounce", help="Seconds to wait for changes to settle")
    ] = None,
    max_retries: Annotated[
        int | None, Option(help="Maximum automatic restarts after a crash")
    ] = None,
    crash_window: Annotated[
        float | None,
        Option(help="Seconds after start during which an exit counts as a crash"),
    ] = None,
    retry_wait: Annotated[
        float | None, Option(help="Seconds to wait before restarting a crashed server")
    ] = None,
    kill_timeout: Annotated[
        float | None, Option(help="Seconds to wait for the old server to exit")
    ] = None,
    initial_build: Annotated[
        bool,
        Option(
            "--initial-build/--no-initial-build",
            help="Build and start immediately instead of waiting for a change",
        ),
    ] = True,
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Show debug logs from the dev loop")
    ] = False,
):
    """Watch the app, rebuild on change and keep the server running."""
    if app_dir is None:
        app_dir = Path.cwd()
    app_dir = app_dir.resolve()

    if not app_dir.is_dir():
        console.print(f"[red]❌ App directory {app_dir} does not exist[/red]")
        raise Exit(code=1)

    try:
        config = DevConfig.read(
            app_dir,
            debounce_delay=debounce,
            max_retry_attempts=max_retries,
            crash_window=crash_window,
            retry_wait=retry_wait,
            kill_timeout=kill_timeout,
            initial_build=None if initial_build else False,
        )
    except ValueError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        raise Exit(code=1)

    configure_dev_logging(verbose=verbose)
    print_banner(config)

    controller = DevLoopController(config)
    asyncio.run(controller.run())
