"""Best-effort teardown of a process and its observed descendants."""

import asyncio

from prochandle.errors import TerminationError
from prochandle.log import logger
from prochandle.models import Stats
from prochandle.system import terminate


async def terminate_tree(
    pid: int,
    stats: Stats | None,
    include_primary: bool = True,
    force: bool = False,
) -> list[int]:
    """
    Signal a primary pid and every descendant listed in ``stats``.

    All signals are sent concurrently and awaited; failures (usually a pid
    that already exited) are logged and otherwise ignored.

    Returns:
        The pids that were signaled successfully.
    """
    targets = [pid] if include_primary else []
    if stats is not None:
        targets.extend(p for p in stats.pids if p != pid)

    results = await asyncio.gather(
        *(asyncio.to_thread(terminate, target, force) for target in targets),
        return_exceptions=True,
    )

    signaled = []
    for target, result in zip(targets, results):
        if isinstance(result, TerminationError):
            logger.debug("Ignoring termination failure for {}: {}", target, result)
        elif isinstance(result, BaseException):
            raise result
        else:
            signaled.append(target)
    return signaled
