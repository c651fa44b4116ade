"""Tests for the snapshot assembler."""

import os
import threading

import pytest

from prochandle import snapshot
from prochandle.debounce import get_debouncer
from prochandle.errors import ProcessNotFoundError, StatLookupError
from prochandle.models import Stats
from prochandle.snapshot import collect_stats
from prochandle.system import ProcessRecord, Usage

MISSING_PID = 5_000_000


class FakeSampler:
    """Sampler returning canned usage records."""

    def __init__(self, usages: dict[int, Usage]) -> None:
        self.usages = usages
        self.requests: list[list[int]] = []
        self.threads: list[int] = []

    def sample(self, pids: list[int]) -> dict[int, Usage]:
        self.threads.append(threading.get_ident())
        self.requests.append(list(pids))
        return {pid: self.usages[pid] for pid in pids if pid in self.usages}


@pytest.fixture
def fake_lookups(monkeypatch):
    """Replace the OS lookups with a fake tree rooted at pid 100."""
    usages = {
        100: Usage(pid=100, cpu=12.5, memory=4096, ppid=1, elapsed=2000),
        101: Usage(pid=101, cpu=50.0, memory=8192, ppid=100, elapsed=1000),
        102: Usage(pid=102, cpu=1.0, memory=1024, ppid=101, elapsed=500),
    }
    records = {
        100: ProcessRecord(pid=100, bin="/bin/work", uid=10, gid=20, name="work", cmd="work --flag"),
        101: ProcessRecord(pid=101, bin="/bin/child", uid=10, gid=20, name="child", cmd="child"),
    }
    sampler = FakeSampler(usages)

    def find(pid):
        return [records[pid]] if pid in records else []

    def tree(pid, include_root=True):
        if pid not in usages:
            raise ProcessNotFoundError(pid)
        descendants = [p for p in usages if p > pid]
        return [pid, *descendants] if include_root else descendants

    monkeypatch.setattr(snapshot, "find_process", find)
    monkeypatch.setattr(snapshot, "process_tree", tree)
    monkeypatch.setattr(snapshot, "get_sampler", lambda: sampler)
    return sampler


class TestCollectStatsMerge:
    """Tests for how lookups are merged into one snapshot."""

    @pytest.mark.asyncio
    async def test_full_snapshot(self, fake_lookups):
        """Test a deep snapshot merges metadata, tree and target usage."""
        stats = await collect_stats(100)

        assert isinstance(stats, Stats)
        assert stats.pid == 100
        assert stats.bin == "/bin/work"
        assert stats.uid == 10
        assert stats.gid == 20
        assert stats.name == "work"
        assert stats.command == "work --flag"
        assert stats.cpu == 12.5
        assert stats.ppid == 1
        assert stats.uptime == 2000
        assert stats.pids == (101, 102)
        assert fake_lookups.requests == [[100, 101, 102]]

    @pytest.mark.asyncio
    async def test_memory_is_target_only(self, fake_lookups):
        """Test descendant memory is not summed into the snapshot."""
        stats = await collect_stats(100)

        assert stats.memory == 4096

    @pytest.mark.asyncio
    async def test_sampling_runs_off_the_loop(self, fake_lookups):
        """Test usage sampling runs in a worker thread."""
        await collect_stats(100)

        assert fake_lookups.threads
        assert threading.get_ident() not in fake_lookups.threads

    @pytest.mark.asyncio
    async def test_shallow_skips_tree(self, fake_lookups):
        """Test a shallow snapshot samples only the target."""
        stats = await collect_stats(100, shallow=True)

        assert stats.pids == ()
        assert fake_lookups.requests == [[100]]

    @pytest.mark.asyncio
    async def test_own_pid_reports_resource_command(self, fake_lookups):
        """Test the resource's command replaces the discovered one for its own pid."""
        stats = await collect_stats(100, own_pid=100, command="work")

        assert stats.command == "work"

    @pytest.mark.asyncio
    async def test_foreign_pid_reports_discovered_command(self, fake_lookups):
        """Test a pid other than the resource's keeps its discovered command."""
        stats = await collect_stats(101, own_pid=100, command="work")

        assert stats.command == "child"
        assert stats.ppid == 100
        assert stats.pids == (102,)

    @pytest.mark.asyncio
    async def test_undiscovered_pid_keeps_defaults(self, fake_lookups):
        """Test metadata stays at defaults when discovery finds nothing."""
        stats = await collect_stats(102)

        assert stats.bin is None
        assert stats.name is None
        assert stats.command is None
        assert stats.uid == 0
        assert stats.cpu == 1.0

    @pytest.mark.asyncio
    async def test_missing_target_raises(self, fake_lookups):
        """Test a missing target pid propagates the tree failure."""
        with pytest.raises(ProcessNotFoundError):
            await collect_stats(MISSING_PID)

    @pytest.mark.asyncio
    async def test_missing_target_usage_raises(self, fake_lookups):
        """Test a target that vanished before sampling is reported as not found."""
        del fake_lookups.usages[100]

        with pytest.raises(ProcessNotFoundError):
            await collect_stats(100, shallow=True)

    @pytest.mark.asyncio
    async def test_vanished_descendant_is_tolerated(self, fake_lookups):
        """Test a descendant dying between tree lookup and sampling does not fail the snapshot."""
        original = fake_lookups.sample

        def sample(pids):
            fake_lookups.usages.pop(102, None)
            return original(pids)

        fake_lookups.sample = sample
        stats = await collect_stats(100)

        assert stats.pid == 100
        assert stats.cpu == 12.5

    @pytest.mark.asyncio
    async def test_sampling_failure_propagates_and_records_activity(self, fake_lookups):
        """Test sampler errors surface verbatim and still reset the debouncer."""
        def sample(pids):
            raise StatLookupError("denied", pid=pids[0])

        fake_lookups.sample = sample
        debouncer = get_debouncer()
        debouncer.cancel()

        with pytest.raises(StatLookupError, match="denied"):
            await collect_stats(100)
        assert debouncer.pending
        debouncer.cancel()


class TestCollectStatsLive:
    """Tests against real processes."""

    @pytest.mark.asyncio
    async def test_current_process(self):
        """Test a snapshot of the test process itself."""
        stats = await collect_stats(os.getpid(), shallow=True)

        assert stats.pid == os.getpid()
        assert stats.ppid == os.getppid()
        assert stats.memory > 0
        assert stats.name
        assert stats.is_running

    @pytest.mark.asyncio
    async def test_descendants_exclude_target(self, sleeper):
        """Test the descendant list holds children but never the target."""
        stats = await collect_stats(os.getpid())

        assert sleeper.pid in stats.pids
        assert os.getpid() not in stats.pids

    @pytest.mark.asyncio
    async def test_missing_pid(self):
        """Test a pid that does not exist raises ProcessNotFoundError."""
        with pytest.raises(ProcessNotFoundError):
            await collect_stats(MISSING_PID)
