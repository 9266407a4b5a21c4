"""Builder collaborator: turns application sources into a runnable artifact.

The dev loop treats building as opaque. `CommandBuilder` runs a sequence of
external commands (bundler, route generation) in the project root and raises
`BuildError` with the captured output when any of them fails.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from orbit.cli.dev.errors import BuildError
from orbit.cli.dev.logging import DevLogComponent, get_logger
from orbit.cli.dev.process_control import kill_process_tree, new_process_group_kwargs
from orbit.constants import BUILD_OUTPUT_DIR, COMPILED_ENTRY_NAME
from orbit.models import AppEntry, Artifact, DevConfig
from orbit.utils import build_child_env, reset_dir

logger = get_logger(DevLogComponent.BUILDER)


class Builder(Protocol):
    """Compiles/bundles application sources; safe to call again after failure."""

    async def build(self, root: Path) -> Artifact: ...


def detect_app_entry(root: Path) -> AppEntry | None:
    """Return the app entry, preferring `app/app.ts` over `app/app.js`."""
    ts_entry = root / "app" / "app.ts"
    js_entry = root / "app" / "app.js"
    if ts_entry.exists():
        return AppEntry(path=ts_entry, is_ts=True)
    if js_entry.exists():
        return AppEntry(path=js_entry, is_ts=False)
    return None


def has_rust_actions(root: Path) -> bool:
    actions_dir = root / "app" / "actions"
    if not actions_dir.is_dir():
        return False
    return any(p.suffix == ".rs" for p in actions_dir.iterdir())


def default_build_commands(entry: AppEntry) -> list[list[str]]:
    """Commands that compile (TypeScript) and execute the app entry."""
    if not entry.is_ts:
        return [["node", "app/app.js"]]
    compiled = f"{BUILD_OUTPUT_DIR}/{COMPILED_ENTRY_NAME}"
    return [
        [
            "npx",
            "esbuild",
            "app/app.ts",
            "--bundle",
            "--platform=node",
            "--format=esm",
            "--target=node18",
            f"--outfile={compiled}",
        ],
        ["node", compiled],
    ]


class CommandBuilder:
    """Runs build commands one after another in the project root."""

    def __init__(self, config: DevConfig) -> None:
        self._config: DevConfig = config

    def commands_for(self, root: Path) -> tuple[AppEntry | None, list[list[str]]]:
        entry = detect_app_entry(root)
        if self._config.build_commands is not None:
            return entry, self._config.build_commands
        if entry is None:
            raise BuildError(f"No app.ts or app.js found in {root / 'app'}")
        return entry, default_build_commands(entry)

    async def build(self, root: Path) -> Artifact:
        entry, commands = self.commands_for(root)

        if self._config.build_commands is None and entry is not None and entry.is_ts:
            # Clean output directory to avoid stale bundles
            reset_dir(root / BUILD_OUTPUT_DIR)

        env = build_child_env(env_file=root / self._config.env_file)
        for cmd in commands:
            await self._run(cmd, root, env)

        return Artifact(root=root, server_dir=root / self._config.server_dir, entry=entry)

    async def _run(self, cmd: list[str], cwd: Path, env: dict[str, str]) -> None:
        logger.debug(f"Running build step: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **new_process_group_kwargs(),
            )
        except OSError as e:
            raise BuildError(f"Could not run `{cmd[0]}`: {e}") from e

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            # Shutdown while building: stop the step and everything it spawned
            kill_process_tree(process.pid)
            try:
                await asyncio.wait_for(process.wait(), timeout=self._config.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Build step pid={process.pid} did not exit within "
                    f"{self._config.kill_timeout:.1f}s"
                )
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if process.returncode != 0:
            raise BuildError(
                f"`{' '.join(cmd)}` failed with exit code {process.returncode}",
                logs=output,
            )

