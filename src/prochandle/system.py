"""OS lookups for prochandle, backed by psutil.

These are the narrow collaborators the process resource depends on:
process discovery, descendant tree, usage sampling, termination.
psutil exceptions never leave this module.
"""

import threading
import time
from dataclasses import dataclass

import psutil

from prochandle.errors import ProcessNotFoundError, StatLookupError, TerminationError

# uids/gids are POSIX only
_RECORD_ATTRS = [
    attr
    for attr in ("pid", "name", "exe", "cmdline", "uids", "gids")
    if hasattr(psutil.Process, attr)
]


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Metadata of one discovered process."""

    pid: int
    bin: str | None
    uid: int
    gid: int
    name: str | None
    cmd: str | None


@dataclass(slots=True, frozen=True)
class Usage:
    """Resource usage of one pid at sample time."""

    pid: int
    cpu: float
    memory: int  # RSS bytes
    ppid: int
    elapsed: int  # Milliseconds since start


def _process(pid: int) -> psutil.Process:
    try:
        return psutil.Process(pid)
    except (OverflowError, ValueError) as err:
        raise ProcessNotFoundError(pid) from err


def is_running(pid: int) -> bool:
    """Check whether a pid exists and is not a zombie."""
    try:
        return _process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, ProcessNotFoundError):
        return False
    except psutil.AccessDenied:
        return True


def find_process(pid: int) -> list[ProcessRecord]:
    """
    Look up metadata for a pid.

    Returns an empty list when the pid does not exist.
    """
    try:
        proc = _process(pid)
        with proc.oneshot():
            info = proc.as_dict(attrs=_RECORD_ATTRS, ad_value=None)
    except (psutil.NoSuchProcess, ProcessNotFoundError):
        return []
    except psutil.AccessDenied as err:
        raise StatLookupError(f"Access denied reading process {pid}", pid=pid) from err

    uids = info.get("uids")
    gids = info.get("gids")
    cmdline = info.get("cmdline") or []
    return [
        ProcessRecord(
            pid=info.get("pid", pid),
            bin=info.get("exe") or None,
            uid=uids.real if uids else 0,
            gid=gids.real if gids else 0,
            name=info.get("name") or None,
            cmd=" ".join(cmdline) if cmdline else info.get("name"),
        )
    ]


def process_tree(pid: int, include_root: bool = True) -> list[int]:
    """
    List the pids transitively spawned by ``pid``.

    Raises:
        ProcessNotFoundError: If the root pid does not exist.
    """
    try:
        children = _process(pid).children(recursive=True)
    except psutil.NoSuchProcess as err:
        raise ProcessNotFoundError(pid) from err
    except psutil.AccessDenied as err:
        raise StatLookupError(f"Access denied walking tree of {pid}", pid=pid) from err

    pids = [child.pid for child in children]
    return [pid, *pids] if include_root else pids


def terminate(pid: int, force: bool = False) -> None:
    """
    Send SIGTERM (or SIGKILL when ``force``) to a pid.

    Raises:
        TerminationError: If the pid is gone, a zombie, or not ours to signal.
    """
    try:
        proc = _process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            raise TerminationError(f"Process {pid} has already exited", pid=pid)
        if force:
            proc.kill()
        else:
            proc.terminate()
    except (psutil.NoSuchProcess, ProcessNotFoundError) as err:
        raise TerminationError(f"No such process: {pid}", pid=pid) from err
    except psutil.AccessDenied as err:
        raise TerminationError(f"Permission denied signaling {pid}", pid=pid) from err


class UsageSampler:
    """
    Samples cpu, memory, parent pid and elapsed time for a set of pids.

    psutil computes cpu_percent as a delta since the previous call on the
    same Process object, so those objects are cached per pid until
    clear_cache() drops them. Sampling runs in worker threads, so the
    cache is guarded by a lock.
    """

    def __init__(self) -> None:
        self._cache: dict[int, psutil.Process] = {}
        self._lock = threading.Lock()

    @property
    def cached_pids(self) -> set[int]:
        """Pids currently holding cpu history."""
        with self._lock:
            return set(self._cache)

    def sample(self, pids: list[int]) -> dict[int, Usage]:
        """
        Sample usage for each pid.

        Pids that no longer exist are left out of the result.

        Raises:
            StatLookupError: If a pid cannot be read for permission reasons.
        """
        usages: dict[int, Usage] = {}
        with self._lock:
            for pid in pids:
                try:
                    usages[pid] = self._sample_one(pid)
                except (psutil.NoSuchProcess, ProcessNotFoundError):
                    self._cache.pop(pid, None)
                except psutil.AccessDenied as err:
                    raise StatLookupError(f"Access denied sampling {pid}", pid=pid) from err
        return usages

    def _sample_one(self, pid: int) -> Usage:
        proc = self._cache.get(pid)
        if proc is None or not proc.is_running():
            proc = _process(pid)
            self._cache[pid] = proc

        with proc.oneshot():
            # First call for a Process returns 0.0
            cpu = proc.cpu_percent(interval=None)
            memory = proc.memory_info().rss
            ppid = proc.ppid()
            created = proc.create_time()

        return Usage(
            pid=pid,
            cpu=cpu,
            memory=memory,
            ppid=ppid,
            elapsed=max(0, int((time.time() - created) * 1000)),
        )

    def clear_cache(self) -> None:
        """Drop all cached cpu history."""
        with self._lock:
            self._cache.clear()


_sampler: UsageSampler | None = None


def get_sampler() -> UsageSampler:
    """Return the process-wide sampler, creating it on first use."""
    global _sampler
    if _sampler is None:
        _sampler = UsageSampler()
    return _sampler
