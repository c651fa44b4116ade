"""Small Python programs used as managed children, and polling helpers."""

import asyncio
import sys

import pytest

from prochandle.models import Stats
from prochandle.process import ManagedProcess

PYTHON = sys.executable

# Runs until signaled
WORK = "import time; time.sleep(30)"

# Starts one long-running child, then runs until signaled
SPAWN = (
    "import subprocess, sys, time\n"
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "time.sleep(30)\n"
)

# Same as SPAWN with a configurable number of children
SPAWN_MANY = (
    "import subprocess, sys, time\n"
    "for _ in range(int(sys.argv[1])):\n"
    "    subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "time.sleep(30)\n"
)

EXIT_123 = "import sys; sys.exit(123)"

ERROR = "raise RuntimeError('boom')"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


async def wait_for_descendants(process: ManagedProcess, count: int, timeout: float = 10.0) -> Stats:
    """Poll stat() until the tree has at least ``count`` descendants."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        stats = await process.stat()
        if len(stats.pids) >= count or loop.time() > deadline:
            return stats
        await asyncio.sleep(0.05)
