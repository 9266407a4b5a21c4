from typing import Annotated

from typer import Exit, Option, Typer

from orbit import __version__
from orbit.cli.dev.commands import dev
from orbit.utils import console

app = Typer(name="orbit", help="Hot-reload dev loop for Titan apps", no_args_is_help=True)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"orbit [bold]{__version__}[/bold]")
        raise Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show the version and exit",
        ),
    ] = None,
):
    """orbit command line."""


app.command(name="dev", help="Run the hot-reload dev loop")(dev)


if __name__ == "__main__":
    app()
