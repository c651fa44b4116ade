"""Tests for tree termination."""

import subprocess
import sys

import pytest

from children import WORK
from prochandle.models import Stats
from prochandle.termination import terminate_tree

MISSING_PID = 5_000_000


@pytest.fixture
def sleepers():
    """Three plain subprocesses that sleep until terminated."""
    procs = [subprocess.Popen([sys.executable, "-c", WORK]) for _ in range(3)]
    yield procs
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()


class TestTerminateTree:
    """Tests for terminate_tree."""

    @pytest.mark.asyncio
    async def test_primary_only(self, sleeper):
        """Test without a snapshot only the primary pid is signaled."""
        signaled = await terminate_tree(sleeper.pid, None)

        assert signaled == [sleeper.pid]
        assert sleeper.wait(timeout=10) != 0

    @pytest.mark.asyncio
    async def test_primary_and_descendants(self, sleepers):
        """Test every pid in the snapshot is signaled along with the primary."""
        primary, *descendants = sleepers
        stats = Stats(pid=primary.pid, pids=tuple(p.pid for p in descendants))

        signaled = await terminate_tree(primary.pid, stats)

        assert sorted(signaled) == sorted(p.pid for p in sleepers)
        for proc in sleepers:
            proc.wait(timeout=10)

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self, sleeper):
        """Test pids that are already gone do not stop the others."""
        stats = Stats(pid=MISSING_PID, pids=(MISSING_PID + 1, sleeper.pid))

        signaled = await terminate_tree(MISSING_PID, stats)

        assert signaled == [sleeper.pid]
        sleeper.wait(timeout=10)

    @pytest.mark.asyncio
    async def test_exclude_primary(self, sleepers):
        """Test include_primary=False leaves the primary pid alone."""
        primary, *descendants = sleepers
        stats = Stats(pid=primary.pid, pids=tuple(p.pid for p in descendants))

        signaled = await terminate_tree(primary.pid, stats, include_primary=False)

        assert primary.pid not in signaled
        assert primary.poll() is None
        for proc in descendants:
            proc.wait(timeout=10)
