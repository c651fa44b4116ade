"""Spawning child processes and wrapping them in observable handles."""

import asyncio
import inspect
import json
import os
import signal
import socket
from collections.abc import Callable, Sequence
from typing import Any

from prochandle.errors import ResourceClosedError, SpawnError, ValidationError
from prochandle.log import logger

# Environment variable telling the child which fd holds its IPC socket
IPC_FD_ENV = "PROCHANDLE_IPC_FD"

_STDIO_MODES = {
    "pipe": asyncio.subprocess.PIPE,
    "inherit": None,
    "ignore": asyncio.subprocess.DEVNULL,
}

# Captured output buffered before the child is made to wait
CAPTURE_LIMIT = 64 * 1024

_CHUNK_SIZE = 16 * 1024


def split_returncode(returncode: int) -> tuple[int | None, signal.Signals | None]:
    """Turn an asyncio returncode into an (exit code, signal) pair."""
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode)
    except ValueError:
        return returncode, None


def _stdio(value: str | Sequence[str]) -> tuple[int | None, int | None, int | None]:
    modes = (value,) * 3 if isinstance(value, str) else tuple(value)
    if len(modes) != 3:
        raise ValidationError("stdio must be a mode or a sequence of three modes")
    try:
        stdin, stdout, stderr = (_STDIO_MODES[mode] for mode in modes)
    except KeyError as err:
        raise ValidationError(f"Unknown stdio mode: {err.args[0]!r}") from err
    return stdin, stdout, stderr


class _PumpGate:
    """
    Stands in for the transport of a capture buffer.

    StreamReader pauses its transport once more than twice its limit is
    buffered and resumes it when reads bring it back under the limit. The
    pump waits on the gate, so the child blocks on a full pipe instead of
    the buffer growing.
    """

    def __init__(self) -> None:
        self._open = asyncio.Event()
        self._open.set()

    def pause_reading(self) -> None:
        self._open.clear()

    def resume_reading(self) -> None:
        self._open.set()

    async def wait(self) -> None:
        await self._open.wait()


async def _pump(source: asyncio.StreamReader, sink: asyncio.StreamReader, gate: _PumpGate) -> None:
    """Copy a pipe into a buffer that outlives the process handle."""
    try:
        while True:
            await gate.wait()
            chunk = await source.read(_CHUNK_SIZE)
            if not chunk:
                break
            sink.feed_data(chunk)
    finally:
        sink.feed_eof()


class IPCChannel:
    """JSON-lines message channel over a socket shared with the child."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._disconnected = False

    @classmethod
    async def open(cls, sock: socket.socket) -> "IPCChannel":
        reader, writer = await asyncio.open_connection(sock=sock)
        return cls(reader, writer)

    @property
    def connected(self) -> bool:
        return not self._disconnected and not self._reader.at_eof()

    async def send(self, message: Any) -> None:
        """Send one JSON-serializable message to the child."""
        if not self.connected:
            raise ResourceClosedError("IPC channel is disconnected.")
        self._writer.write(json.dumps(message).encode() + b"\n")
        await self._writer.drain()

    async def receive(self) -> Any:
        """Wait for the next message from the child."""
        if self._disconnected:
            raise ResourceClosedError("IPC channel is disconnected.")
        line = await self._reader.readline()
        if not line:
            self.disconnect()
            raise ResourceClosedError("IPC channel closed by the child.")
        return json.loads(line)

    def disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        self._writer.close()


class ProcessHandle:
    """
    Live handle on one spawned process.

    Wraps an asyncio subprocess and turns its completion into discrete
    notifications: exit (code, signal) once the process terminates, then
    close once its captured stdout/stderr have drained. stdout/stderr are
    copied into buffers from the moment the handle is created so no output
    is lost and it stays readable after the handle is released. A buffer
    holds about CAPTURE_LIMIT bytes; past that the child blocks on its pipe
    until the output is read, and close waits for it as well.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        channel: IPCChannel | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        self._process = process
        self._channel = channel
        self._killed = False
        self._exit_callbacks: list[Callable[[int | None, signal.Signals | None], None]] = []
        self._close_callbacks: list[Callable[[], None]] = []
        self._error_callbacks: list[Callable[[BaseException], None]] = []
        self._exited: asyncio.Future[tuple[int | None, signal.Signals | None]] = loop.create_future()
        self._closed: asyncio.Future[None] = loop.create_future()
        self._pumps: list[asyncio.Task[None]] = []

        self.stdout = self._capture(process.stdout)
        self.stderr = self._capture(process.stderr)
        self._watcher = asyncio.create_task(self._watch())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self._process.stdin

    @property
    def channel(self) -> IPCChannel | None:
        return self._channel

    @property
    def killed(self) -> bool:
        """True once a signal was delivered through this handle."""
        return self._killed

    @property
    def exited(self) -> bool:
        return self._exited.done()

    def _capture(self, source: asyncio.StreamReader | None) -> asyncio.StreamReader | None:
        if source is None:
            return None
        sink = asyncio.StreamReader(limit=CAPTURE_LIMIT)
        gate = _PumpGate()
        sink.set_transport(gate)
        self._pumps.append(asyncio.create_task(_pump(source, sink, gate)))
        return sink

    def on_exit(self, callback: Callable[[int | None, signal.Signals | None], None]) -> None:
        if self._exited.done():
            callback(*self._exited.result())
        else:
            self._exit_callbacks.append(callback)

    def on_close(self, callback: Callable[[], None]) -> None:
        if self._closed.done():
            callback()
        else:
            self._close_callbacks.append(callback)

    def on_error(self, callback: Callable[[BaseException], None]) -> None:
        self._error_callbacks.append(callback)

    def remove_error_callback(self, callback: Callable[[BaseException], None]) -> None:
        if callback in self._error_callbacks:
            self._error_callbacks.remove(callback)

    def send_signal(self, sig: int) -> None:
        """Deliver a signal to the process."""
        self._process.send_signal(sig)
        self._killed = True

    def kill(self) -> None:
        """Forcefully kill the process."""
        self._process.kill()
        self._killed = True

    async def wait(self) -> tuple[int | None, signal.Signals | None]:
        """Wait for the process to exit and return (code, signal)."""
        return await asyncio.shield(self._exited)

    async def wait_closed(self) -> None:
        """Wait until the process exited and its stdio drained."""
        await asyncio.shield(self._closed)

    async def _watch(self) -> None:
        try:
            returncode = await self._process.wait()
        except Exception as err:
            logger.debug("Waiting on pid {} failed: {}", self.pid, err)
            for callback in list(self._error_callbacks):
                callback(err)
            self._finish()
            return

        code, sig = split_returncode(returncode)
        self._exited.set_result((code, sig))
        for callback in self._exit_callbacks:
            callback(code, sig)

        await asyncio.gather(*self._pumps, return_exceptions=True)
        self._finish()

    def _finish(self) -> None:
        if self._closed.done():
            return
        self._closed.set_result(None)
        for callback in self._close_callbacks:
            callback()


async def default_spawn(
    command: str,
    args: Sequence[str],
    options: dict[str, Any],
) -> ProcessHandle:
    """
    Spawn ``command`` with asyncio and return its handle.

    Recognized options:
        stdio: "pipe" (default), "inherit", "ignore", or one per stream.
        env: Environment for the child.
        ipc: Open a JSON-lines channel to the child (POSIX only). The child
            finds its socket fd in the PROCHANDLE_IPC_FD variable.

    Every other option is passed to asyncio.create_subprocess_exec.
    """
    options = dict(options)
    stdin, stdout, stderr = _stdio(options.pop("stdio", "pipe"))
    env = options.pop("env", None)

    parent_sock: socket.socket | None = None
    child_sock: socket.socket | None = None
    if options.pop("ipc", False):
        parent_sock, child_sock = socket.socketpair()
        env = {**(env if env is not None else os.environ), IPC_FD_ENV: str(child_sock.fileno())}
        options["pass_fds"] = (*options.get("pass_fds", ()), child_sock.fileno())

    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            env=env,
            **options,
        )
    except BaseException:
        if parent_sock is not None:
            parent_sock.close()
        raise
    finally:
        if child_sock is not None:
            child_sock.close()

    channel = await IPCChannel.open(parent_sock) if parent_sock is not None else None
    return ProcessHandle(process, channel=channel)


async def resolve_handle(result: Any) -> ProcessHandle:
    """Normalize what a spawn strategy returned into a ProcessHandle."""
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, ProcessHandle):
        return result
    if isinstance(result, asyncio.subprocess.Process):
        return ProcessHandle(result)
    raise SpawnError(f"Spawn strategy returned {type(result).__name__}, expected a process handle")
