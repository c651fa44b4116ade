"""Managed child process resource.

A ManagedProcess wraps one spawned process: it is opened once, queried
for stats any number of times, and closed exactly once, taking the whole
observed process tree down with it.
"""

import asyncio
import shlex
from collections.abc import Callable
from contextlib import suppress
from enum import Enum
from signal import Signals
from typing import Any

from prochandle.config import settings
from prochandle.errors import (
    ProcHandleError,
    ResourceClosedError,
    ResourceNotRunningError,
    SpawnError,
    TerminationError,
    ValidationError,
)
from prochandle.log import logger
from prochandle.models import Stats
from prochandle.snapshot import collect_stats
from prochandle.spawn import IPCChannel, ProcessHandle, default_spawn, resolve_handle
from prochandle.system import terminate
from prochandle.termination import terminate_tree


class ProcessState(Enum):
    """Lifecycle states of a ManagedProcess."""

    UNOPENED = "unopened"
    OPENING = "opening"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class ManagedProcess:
    """
    A spawned child process managed as a resource.

    The process is started by open(), inspected with stat(), signaled with
    kill() and torn down, descendants included, by close(). close() also
    runs on its own once the process exits and its output has drained.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the ManagedProcess.

        Args:
            command: Executable to run.
            args: Arguments, as a list or a shell-style string.
            options: Passed through to the spawn strategy. A callable under
                the ``spawn`` key replaces the default strategy; it is called
                as ``spawn(command, args, options)`` and may return a
                ProcessHandle, an asyncio subprocess, or an awaitable of
                either.
        """
        if not isinstance(command, str) or not command:
            raise ValidationError("command must be a non-empty string")
        if isinstance(args, str):
            args = shlex.split(args)
        if options is not None and not isinstance(options, dict):
            raise ValidationError("options must be a dict")

        self.command = command
        self.args: list[str] = list(args) if args is not None else []
        self.options: dict[str, Any] = dict(options or {})

        spawn = self.options.pop("spawn", None)
        if spawn is not None and not callable(spawn):
            raise ValidationError("spawn option must be callable")
        self._spawn: Callable[..., Any] = spawn or default_spawn

        self._state = ProcessState.UNOPENED
        self._handle: ProcessHandle | None = None
        self._opening: asyncio.Future[None] | None = None
        self._closing: asyncio.Task[None] | None = None
        self._auto_close: asyncio.Task[None] | None = None
        self._last_stats: Stats | None = None

        self._code: int | None = None
        self._signal: Signals | None = None
        self._ppid: int | None = None
        self._exited = False
        self._killed = False
        self._stdout: asyncio.StreamReader | None = None
        self._stderr: asyncio.StreamReader | None = None

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.command!r} pid={self.pid} state={self._state.value}>"

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_active(self) -> bool:
        """Opened and not yet exited."""
        return self._state is ProcessState.ACTIVE and not self._exited

    @property
    def closed(self) -> bool:
        return self._state is ProcessState.CLOSED

    @property
    def pid(self) -> int | None:
        return self._handle.pid if self._handle is not None else None

    @property
    def ppid(self) -> int | None:
        return self._ppid

    @property
    def channel(self) -> IPCChannel | None:
        return self._handle.channel if self._handle is not None else None

    @property
    def connected(self) -> bool:
        """Whether the IPC channel (``ipc`` option) is still connected."""
        channel = self.channel
        return channel is not None and channel.connected

    @property
    def killed(self) -> bool:
        if self._handle is not None and self._handle.killed:
            self._killed = True
        return self._killed

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def code(self) -> int | None:
        return self._code

    @property
    def signal(self) -> Signals | None:
        return self._signal

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self._handle.stdin if self._handle is not None else None

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._stderr

    async def open(self) -> None:
        """
        Spawn the process.

        Raises:
            SpawnError: The process could not be started.
            ResourceClosedError: The resource was already closed.
        """
        if self._state is ProcessState.ACTIVE:
            return
        if self._state in (ProcessState.CLOSING, ProcessState.CLOSED):
            raise ResourceClosedError()
        if self._opening is not None and not self._opening.done():
            await asyncio.shield(self._opening)
            return

        self._state = ProcessState.OPENING
        self._opening = asyncio.get_running_loop().create_future()
        try:
            await self._open()
        except BaseException as err:
            self._discard_handle()
            self._state = ProcessState.UNOPENED
            self._settle_open(err)
            raise
        self._state = ProcessState.ACTIVE
        self._settle_open()

    def _settle_open(self, error: BaseException | None = None) -> None:
        opening = self._opening
        if opening is None or opening.done():
            return
        if error is None:
            opening.set_result(None)
        else:
            opening.set_exception(error)
            # Nobody may be awaiting it when open() itself re-raises
            opening.exception()

    async def _open(self) -> None:
        try:
            handle = await resolve_handle(self._spawn(self.command, self.args, self.options))
        except ProcHandleError:
            raise
        except Exception as err:
            raise SpawnError(f"Failed to spawn {self.command!r}: {err}") from err

        self._handle = handle
        self._stdout = handle.stdout
        self._stderr = handle.stderr
        self._code = None
        self._signal = None

        errors: list[BaseException] = []
        on_error = errors.append
        handle.on_exit(self._on_exit)
        handle.on_close(lambda: self._on_close(handle))
        handle.on_error(on_error)
        logger.info("Spawned {} {} (pid {})", self.command, self.args, handle.pid)

        try:
            stats = await self.stat(pid=handle.pid, shallow=True)
        except ProcHandleError as err:
            # The process can exit before it is ever inspected
            logger.debug("Initial stat of pid {} failed: {}", handle.pid, err)
        else:
            if not self._exited:
                self._ppid = stats.ppid

        handle.remove_error_callback(on_error)
        if errors:
            raise SpawnError(f"Process {self.command!r} failed: {errors[0]}") from errors[0]

    def _discard_handle(self) -> None:
        handle, self._handle = self._handle, None
        self._stdout = None
        self._stderr = None
        self._ppid = None
        if handle is None:
            return
        if not handle.exited:
            with suppress(ProcessLookupError):
                handle.kill()
        if handle.channel is not None:
            handle.channel.disconnect()

    def _on_exit(self, code: int | None, sig: Signals | None) -> None:
        if self._exited:
            return
        self._exited = True
        self._code = code
        self._signal = sig
        self._ppid = None
        logger.debug("Process {} exited (code={}, signal={})", self.pid, code, sig)

    def _on_close(self, handle: ProcessHandle) -> None:
        if self._closing is None:
            self._auto_close = asyncio.ensure_future(self._close_exited(handle))

    async def _close_exited(self, handle: ProcessHandle) -> None:
        if self._opening is not None and not self._opening.done():
            with suppress(Exception):
                await asyncio.shield(self._opening)
        # A failed open already released the handle
        if self._handle is handle:
            await self.close(allow_active=True)

    async def close(self, allow_active: bool = False) -> None:
        """
        Tear the resource down.

        Args:
            allow_active: The caller asserts the process has exited or will
                exit by itself, so the primary pid is not signaled. Its exit
                is awaited for at most the close grace period, then the
                handle is released without escalating. Observed descendants
                are still terminated.
        """
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._close(allow_active))
        await asyncio.shield(self._closing)

    async def _close(self, allow_active: bool) -> None:
        if self._opening is not None and not self._opening.done():
            with suppress(Exception):
                await asyncio.shield(self._opening)

        self._state = ProcessState.CLOSING
        handle = self._handle
        if handle is not None:
            stats = self._last_stats
            try:
                stats = await self.stat()
            except ProcHandleError as err:
                # Fall back to the last tree seen; the primary may already be gone
                logger.debug("Stat before close of pid {} failed: {}", handle.pid, err)

            signal_primary = not allow_active and not handle.exited
            await terminate_tree(handle.pid, stats, include_primary=signal_primary)
            await self._wait_exit(handle, allow_active)

            if handle.channel is not None:
                handle.channel.disconnect()

        self._handle = None
        self._opening = None
        self._last_stats = None
        self._state = ProcessState.CLOSED
        logger.info("Closed {} (code={}, signal={})", self.command, self._code, self._signal)

    async def _wait_exit(self, handle: ProcessHandle, allow_active: bool) -> None:
        grace = settings.close_grace_period
        try:
            await asyncio.wait_for(handle.wait(), timeout=grace)
        except asyncio.TimeoutError:
            if allow_active:
                # Exit is still recorded by the exit observer whenever it happens
                logger.debug("Process {} still running after {}s, releasing it", handle.pid, grace)
                return
            logger.warning("Process {} ignored SIGTERM for {}s, killing it", handle.pid, grace)
            with suppress(ProcessLookupError):
                handle.kill()
            await handle.wait()

    async def kill(self, force: bool = False) -> None:
        """
        Signal the primary process (descendants are left to close()).

        Raises:
            ResourceClosedError: The resource was closed.
            ResourceNotRunningError: The resource was never opened.
            TerminationError: The process already exited or could not be
                signaled.
        """
        handle = self._require_handle()
        if handle.exited:
            raise TerminationError(f"Process {handle.pid} has already exited", pid=handle.pid)

        await asyncio.to_thread(terminate, handle.pid, force)
        self._killed = True
        logger.debug("Sent {} to {}", "SIGKILL" if force else "SIGTERM", handle.pid)

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(handle.wait(), timeout=settings.kill_settle_timeout)

    async def stat(self, pid: int | None = None, shallow: bool = False) -> Stats:
        """
        Take a snapshot of a process and its descendants.

        Args:
            pid: Process to inspect. Defaults to the primary pid; an explicit
                pid may be inspected whatever state the resource is in.
            shallow: Skip descendant discovery.

        Raises:
            ResourceClosedError: No pid given and the resource was closed.
            ResourceNotRunningError: No pid given and the resource was never
                opened.
            StatLookupError: A lookup failed, including ProcessNotFoundError.
        """
        if pid is None:
            pid = self._require_handle().pid
        elif isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            raise ValidationError(f"pid must be a positive integer, got {pid!r}")

        stats = await collect_stats(pid, shallow=shallow, own_pid=self.pid, command=self.command)
        if not shallow and pid == self.pid:
            self._last_stats = stats
        return stats

    def _require_handle(self) -> ProcessHandle:
        closing = self._state in (ProcessState.CLOSING, ProcessState.CLOSED)
        if self._handle is None and closing:
            raise ResourceClosedError()
        if self._handle is None or (not closing and self._state is not ProcessState.ACTIVE):
            raise ResourceNotRunningError()
        return self._handle


def create_process(
    command: str,
    args: list[str] | str | None = None,
    options: dict[str, Any] | None = None,
) -> ManagedProcess:
    """Factory for ManagedProcess instances."""
    return ManagedProcess(command, args, options)
