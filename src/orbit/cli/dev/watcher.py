"""Filesystem watcher: forwards watchfiles change sets as WatchEvents."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from pathlib import Path

import watchfiles

from orbit.cli.dev.logging import DevLogComponent, get_logger
from orbit.models import ChangeKind, WatchEvent

logger = get_logger(DevLogComponent.WATCHER)

_CHANGE_KINDS: dict[watchfiles.Change, ChangeKind] = {
    watchfiles.Change.added: ChangeKind.added,
    watchfiles.Change.modified: ChangeKind.modified,
    watchfiles.Change.deleted: ChangeKind.deleted,
}


def to_watch_events(changes: set[tuple[watchfiles.Change, str]]) -> list[WatchEvent]:
    """Convert a watchfiles change set into WatchEvents, ordered by path."""
    return [
        WatchEvent(path=Path(path), kind=_CHANGE_KINDS[change])
        for change, path in sorted(changes, key=lambda c: c[1])
    ]


async def watch_paths(
    paths: Sequence[Path],
    on_event: Callable[[WatchEvent], None],
    *,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Watch `paths` until `stop_event` is set, calling `on_event` per change.

    watchfiles' own debounce is kept short; coalescing is the Debouncer's job.
    """
    if not paths:
        logger.warning("No watch paths exist; hot reload is disabled")
        return

    logger.debug(f"Watching {', '.join(str(p) for p in paths)}")
    async for changes in watchfiles.awatch(
        *paths,
        watch_filter=watchfiles.DefaultFilter(),
        debounce=50,
        step=25,
        stop_event=stop_event,
    ):
        for event in to_watch_events(changes):
            on_event(event)
