"""Data models for prochandle."""

import time
from dataclasses import dataclass, field

from prochandle.system import is_running


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class Stats:
    """Immutable point-in-time snapshot of a process and its descendants."""

    pid: int
    bin: str | None = None  # Binary used to start the process
    uid: int = 0
    gid: int = 0
    name: str | None = None
    command: str | None = None
    cpu: float = 0.0  # 0.0 - 100.0 * core_count
    ppid: int = 0
    memory: int = 0  # RSS bytes of the target pid only
    uptime: int = 0  # Milliseconds since the process started
    pids: tuple[int, ...] = ()  # Descendants, never including pid
    atime: int = field(default_factory=_now_ms)  # Capture time, epoch ms

    @property
    def is_running(self) -> bool:
        """True while the target or any observed descendant is alive."""
        return any(is_running(pid) for pid in (self.pid, *self.pids))
