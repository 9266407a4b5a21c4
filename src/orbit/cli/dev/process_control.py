"""Cross-platform termination of the dev server process tree.

Design goals:
- Only stop the process we started, together with everything it spawned.
- POSIX: signal the whole process group (SIGTERM, then SIGKILL), then reap
  group members that outlived the root (e.g. a compiler daemon).
- Windows: no group signals, so use the `taskkill /t` tree-kill utility.
- Bounded waits everywhere: a wedged process is logged, never waited on forever.
"""

from __future__ import annotations

import os
import signal
import subprocess
from collections.abc import Callable
from typing import Protocol

import psutil
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from orbit.cli.dev.logging import DevLogComponent, get_logger
from orbit.constants import KILL_GRACE, KILL_TIMEOUT
from orbit.models import ServerProcessHandle

logger = get_logger(DevLogComponent.PROCESS_CONTROL)


def new_process_group_kwargs() -> dict[str, object]:
    """Spawn kwargs that put the child in its own process group/session."""
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]
    return {"start_new_session": True}


def get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def list_pgid_members(pgid: int) -> list[int]:
    """Return live PIDs in a process group (POSIX only)."""
    if os.name == "nt":
        return []
    pids: list[int] = []
    for proc in psutil.process_iter(["pid", "status"]):
        try:
            if proc.info["status"] == psutil.STATUS_ZOMBIE:
                continue
            pid = int(proc.pid)
            if get_pgid_safe(pid) == pgid:
                pids.append(pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return pids


def kill_process_tree(pid: int) -> None:
    """Forcefully stop `pid` and everything it spawned.

    `pid` must lead its own process group (see `new_process_group_kwargs`).
    """
    if os.name == "nt":
        try:
            subprocess.run(
                ["taskkill", "/pid", str(pid), "/t", "/f"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as e:
            logger.warning(f"taskkill failed for pid={pid}: {e}")
        return
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.debug(f"killpg({pid}) refused: {e}")


class ProcessTerminator(Protocol):
    """Platform strategy for stopping a server process and its descendants."""

    def terminate(self, handle: ServerProcessHandle) -> None:
        """Ask the process tree to stop."""
        ...

    def kill(self, handle: ServerProcessHandle) -> None:
        """Forcefully stop the process tree."""
        ...

    async def reap(self, handle: ServerProcessHandle, timeout: float) -> None:
        """Stop descendants that outlived the root process."""
        ...


class ProcessGroupTerminator:
    """POSIX: the server runs as its own session, so signal the group."""

    def __init__(self, poll_interval: float = 0.1) -> None:
        self.poll_interval: float = poll_interval

    def _signal(self, handle: ServerProcessHandle, sig: int) -> None:
        pgid = handle.pgid
        if pgid is not None:
            try:
                os.killpg(pgid, sig)
                return
            except ProcessLookupError:
                return
            except PermissionError as e:
                logger.debug(f"killpg({pgid}) refused: {e}; signalling pid only")
        try:
            handle.process.send_signal(sig)
        except ProcessLookupError:
            pass

    def terminate(self, handle: ServerProcessHandle) -> None:
        self._signal(handle, signal.SIGTERM)

    def kill(self, handle: ServerProcessHandle) -> None:
        self._signal(handle, signal.SIGKILL)

    async def reap(self, handle: ServerProcessHandle, timeout: float) -> None:
        pgid = handle.pgid
        if pgid is None or not list_pgid_members(pgid):
            return
        try:
            os.killpg(pgid, signal.SIGKILL)
        except OSError:
            pass
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(timeout),
                wait=wait_fixed(self.poll_interval),
                retry=retry_if_result(bool),
            ):
                with attempt:
                    remaining = list_pgid_members(pgid)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(remaining)
        except RetryError:
            logger.warning(
                f"Process group {pgid} still has members after {timeout:.1f}s: "
                f"{list_pgid_members(pgid)}"
            )


class TreeKillTerminator:
    """Windows: use `taskkill /t` to stop the whole tree."""

    def _taskkill(self, handle: ServerProcessHandle, force: bool) -> None:
        cmd = ["taskkill", "/pid", str(handle.pid), "/t"]
        if force:
            cmd.append("/f")
        try:
            subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as e:
            # taskkill missing (unusual); fall back to psutil
            logger.debug(f"taskkill unavailable ({e}); killing tree via psutil")
            self._kill_tree(handle)

    def _kill_tree(self, handle: ServerProcessHandle) -> None:
        try:
            root = psutil.Process(handle.pid)
            procs = root.children(recursive=True) + [root]
        except psutil.NoSuchProcess:
            return
        for p in procs:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                continue

    def terminate(self, handle: ServerProcessHandle) -> None:
        self._taskkill(handle, force=False)

    def kill(self, handle: ServerProcessHandle) -> None:
        self._taskkill(handle, force=True)

    async def reap(self, handle: ServerProcessHandle, timeout: float) -> None:
        # `/t` already covered descendants while the root was alive.
        return None


def select_terminator() -> ProcessTerminator:
    """Pick the termination strategy for the current platform."""
    if os.name == "nt":
        return TreeKillTerminator()
    return ProcessGroupTerminator()


class KillController:
    """Stops the server with a bounded wait; idempotent.

    `is_killing` is raised for the duration of a kill so the launcher can tell
    an intentional shutdown from a crash.
    """

    def __init__(
        self,
        terminator: ProcessTerminator | None = None,
        *,
        timeout: float = KILL_TIMEOUT,
        grace: float = KILL_GRACE,
    ) -> None:
        self._terminator: ProcessTerminator = terminator or select_terminator()
        self.timeout: float = timeout
        self.grace: float = min(grace, timeout)
        self._killing: bool = False

    @property
    def is_killing(self) -> bool:
        return self._killing

    async def kill(self, handle: ServerProcessHandle | None) -> bool:
        """Stop `handle`'s process tree.

        Returns True if a live process was signalled, False for a no-op
        (no handle, or the process already exited).
        """
        if handle is None or handle.has_exited:
            return False

        self._killing = True
        handle.stopping = True
        try:
            logger.debug(f"Stopping server pid={handle.pid} pgid={handle.pgid}")
            self._send(self._terminator.terminate, handle)
            closed = await handle.wait_closed(self.grace)
            if not closed:
                logger.debug(f"Server pid={handle.pid} ignored SIGTERM; forcing")
                self._send(self._terminator.kill, handle)
                closed = await handle.wait_closed(self.timeout - self.grace)
            if closed:
                await self._terminator.reap(handle, timeout=self.grace or 0.5)
            else:
                logger.warning(
                    f"Server pid={handle.pid} did not exit within {self.timeout:.1f}s; "
                    "continuing as if it were gone"
                )
        finally:
            self._killing = False
        return True

    @staticmethod
    def _send(
        action: Callable[[ServerProcessHandle], None], handle: ServerProcessHandle
    ) -> None:
        try:
            action(handle)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Failed to signal server pid={handle.pid}: {e}")
