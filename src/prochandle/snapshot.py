"""Assembles a Stats snapshot from independent OS lookups."""

import asyncio

from prochandle.debounce import get_debouncer
from prochandle.errors import ProcessNotFoundError
from prochandle.models import Stats
from prochandle.system import find_process, get_sampler, process_tree


async def collect_stats(
    pid: int,
    shallow: bool = False,
    own_pid: int | None = None,
    command: str | None = None,
) -> Stats:
    """
    Build a snapshot for ``pid``.

    Discovery and (unless shallow) the descendant tree are looked up
    concurrently, then usage is sampled for the target and its descendants.
    cpu, ppid, uptime and memory come from the target's own usage record.

    Args:
        pid: Process to inspect.
        shallow: Skip descendant discovery.
        own_pid: Primary pid of the calling resource. When the target is
            that pid the snapshot reports ``command`` instead of the
            discovered command line.
        command: Command the resource was started with.

    Raises:
        ProcessNotFoundError: The target does not exist.
        StatLookupError: Any other lookup failure.
    """
    if shallow:
        records = await asyncio.to_thread(find_process, pid)
        tree = [pid]
    else:
        records, tree = await asyncio.gather(
            asyncio.to_thread(find_process, pid),
            asyncio.to_thread(process_tree, pid, True),
        )

    fields: dict = {}
    for record in records:
        if record.pid == pid:
            fields.update(
                bin=record.bin,
                uid=record.uid,
                gid=record.gid,
                name=record.name,
                command=command if record.pid == own_pid else record.cmd,
            )
            break

    pids = tuple(p for p in tree if p != pid)

    try:
        usages = await asyncio.to_thread(get_sampler().sample, [pid, *pids])
    finally:
        get_debouncer().record_activity()

    usage = usages.get(pid)
    if usage is None:
        raise ProcessNotFoundError(pid)

    return Stats(
        pid=pid,
        cpu=usage.cpu,
        ppid=usage.ppid,
        memory=usage.memory,
        uptime=usage.elapsed,
        pids=pids,
        **fields,
    )
