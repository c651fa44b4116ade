"""prochandle-top - live Textual viewer for one managed process tree."""

import asyncio
from enum import Enum

import typer
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from prochandle.config import settings
from prochandle.errors import ProcHandleError
from prochandle.log import logger, setup_logger
from prochandle.models import Stats
from prochandle.process import ManagedProcess


class SortKey(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_duration(milliseconds: int) -> str:
    """Format an uptime in milliseconds as [D days, ]HH:MM:SS."""
    seconds_total = milliseconds // 1000
    days = seconds_total // 86400
    hours = (seconds_total % 86400) // 3600
    minutes = (seconds_total % 3600) // 60
    seconds = seconds_total % 60
    if days > 0:
        return f"{days} days, {hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class ProcessHeader(Static):
    """Header showing the primary process summary."""

    DEFAULT_CSS = """
    ProcessHeader {
        height: auto;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__("Starting...", *args, **kwargs)
        self._stats: Stats | None = None
        self._status: str | None = None

    def update_stats(self, stats: Stats) -> None:
        """Show a fresh snapshot of the primary process."""
        self._stats = stats
        self.update(self.render_summary())

    def set_status(self, status: str) -> None:
        """Show a lifecycle message such as an exit status."""
        self._status = status
        self.update(self.render_summary())

    def render_summary(self) -> str:
        stats = self._stats
        if stats is None:
            return self._status or "Starting..."

        # Same shape as: > name (pid) | up for ... | CPU | MEM | children
        summary = (
            f"> {stats.name or stats.command} ({stats.pid}) | "
            f"up for {format_duration(stats.uptime)} | "
            f"CPU: {int(stats.cpu)}% | "
            f"MEM: {format_bytes(stats.memory).strip()} | "
            f"{len(stats.pids)} child process(es)"
        )
        if self._status:
            summary += f"\n{self._status}"
        return summary


class ProcessTable(Container):
    """Container for the process tree table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sort_key: SortKey = SortKey.CPU
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.CPU, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PID", key="pid", width=8)
        table.add_column("PPID", key="ppid", width=8)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("UPTIME", key="uptime", width=12)
        table.add_column("Command", key="command")

    def update_processes(self, processes: list[Stats]) -> None:
        """
        Update the table with one snapshot per process.

        Rows are rebuilt in sort order on every update; the cursor stays on
        the same pid while it is still listed.
        """
        table = self.query_one("#process-table", DataTable)
        sorted_processes = self._sort_processes(processes)

        selected = None
        if table.row_count:
            selected = table.coordinate_to_cell_key(table.cursor_coordinate).row_key.value

        table.clear()
        for proc in sorted_processes:
            table.add_row(*self._cells(proc), key=str(proc.pid))

        row_keys = [str(proc.pid) for proc in sorted_processes]
        if selected in row_keys:
            table.move_cursor(row=row_keys.index(selected))

    def row_pids(self) -> list[int]:
        """Pids in display order."""
        table = self.query_one("#process-table", DataTable)
        return [int(row_key.value) for row_key in table.rows]

    def _cells(self, proc: Stats) -> tuple[str, ...]:
        return (
            str(proc.pid),
            str(proc.ppid),
            f"{proc.cpu:5.1f}",
            format_bytes(proc.memory),
            format_duration(proc.uptime),
            (proc.command or proc.name or "")[:50],
        )

    def _sort_processes(self, processes: list[Stats]) -> list[Stats]:
        key_func = {
            SortKey.CPU: lambda p: p.cpu,
            SortKey.MEM: lambda p: p.memory,
            SortKey.PID: lambda p: p.pid,
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)


class ProcessViewerApp(App):
    """Opens a managed process and shows its tree until it exits or q is pressed."""

    TITLE = "prochandle-top"
    SUB_TITLE = "Managed Process Viewer"

    CSS = """
    Screen {
        layout: vertical;
    }

    #process-header {
        dock: top;
        height: auto;
        min-height: 3;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("k", "kill", "Kill"),
    ]

    def __init__(self, process: ManagedProcess, poll_rate: float | None = None) -> None:
        super().__init__()
        self._process = process
        self._poll_rate = max(0.1, poll_rate if poll_rate is not None else settings.poll_rate)
        self._refreshing = False

    @property
    def process(self) -> ManagedProcess:
        return self._process

    def compose(self) -> ComposeResult:
        yield ProcessHeader(id="process-header")
        yield ProcessTable()
        yield Footer()

    async def on_mount(self) -> None:
        """Open the process and start polling it."""
        header = self.query_one("#process-header", ProcessHeader)
        try:
            await self._process.open()
        except ProcHandleError as err:
            logger.error("Failed to open {}: {}", self._process.command, err)
            header.set_status(f"Failed to start: {err}")
            return

        self.set_interval(self._poll_rate, self.refresh_stats)
        await self.refresh_stats()

    async def refresh_stats(self) -> None:
        """Take a snapshot of the tree and update the widgets."""
        if self._refreshing:
            return
        self._refreshing = True
        try:
            await self._refresh_stats()
        finally:
            self._refreshing = False

    async def _refresh_stats(self) -> None:
        header = self.query_one("#process-header", ProcessHeader)
        process_table = self.query_one(ProcessTable)

        if self._process.exited:
            header.set_status(self._exit_status())
            process_table.update_processes([])
            return

        try:
            stats = await self._process.stat()
        except ProcHandleError as err:
            # The process may have exited between polls
            logger.debug("stat() failed: {}", err)
            return

        results = await asyncio.gather(
            *(self._process.stat(pid=pid, shallow=True) for pid in stats.pids),
            return_exceptions=True,
        )
        descendants = [result for result in results if isinstance(result, Stats)]

        header.update_stats(stats)
        process_table.update_processes([stats, *descendants])

    def _exit_status(self) -> str:
        if self._process.signal is not None:
            return f"Exited on {self._process.signal.name}"
        return f"Exited with code {self._process.code}"

    def action_sort(self) -> None:
        """Cycle the sort key of the process table."""
        process_table = self.query_one(ProcessTable)
        new_sort_key = process_table.cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    async def action_kill(self) -> None:
        """Send SIGTERM to the primary process."""
        try:
            await self._process.kill()
        except ProcHandleError as err:
            self.notify(str(err), severity="error")

    async def action_quit(self) -> None:
        """Close the process tree, then exit."""
        await self._process.close()
        self.exit()


cli = typer.Typer(add_completion=False)


@cli.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def main(
    command: str = typer.Argument(..., help="Executable to run"),
    args: list[str] = typer.Argument(None, help="Arguments for the command"),
    poll_rate: float = typer.Option(settings.poll_rate, "--poll-rate", help="Seconds between polls"),
) -> None:
    """Run COMMAND under prochandle and watch its process tree."""
    if settings.log_file is not None:
        setup_logger(settings.log_level, settings.log_file)

    # The TUI owns the terminal and nothing reads captured output
    process = ManagedProcess(command, args or [], {"stdio": "ignore"})
    app = ProcessViewerApp(process, poll_rate=poll_rate)
    app.run()


if __name__ == "__main__":
    cli()
