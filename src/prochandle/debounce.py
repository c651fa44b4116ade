"""Shared debounce timer that clears the usage sampler cache when idle."""

import asyncio
from collections.abc import Callable

from prochandle.config import settings
from prochandle.log import logger
from prochandle.system import get_sampler


class SamplerDebouncer:
    """
    Single timer shared by every process resource.

    Each record_activity() call cancels the pending timer and arms a new one
    on the running loop; the idle callbacks fire once ``delay`` seconds pass
    without further activity.
    """

    def __init__(self, delay: float) -> None:
        self._delay = delay
        self._handle: asyncio.TimerHandle | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        """Whether an idle callback is scheduled."""
        return self._handle is not None and not self._handle.cancelled()

    def on_idle(self, callback: Callable[[], None]) -> None:
        """Register a callback to run when the quiet period elapses."""
        self._callbacks.append(callback)

    def record_activity(self) -> None:
        """Reset the quiet period."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        logger.debug("Usage sampler idle, running {} callback(s)", len(self._callbacks))
        for callback in self._callbacks:
            callback()


_debouncer: SamplerDebouncer | None = None


def get_debouncer() -> SamplerDebouncer:
    """
    Return the process-wide debouncer.

    Created lazily on first use with the shared sampler's clear_cache() as
    its idle callback. It is never torn down.
    """
    global _debouncer
    if _debouncer is None:
        _debouncer = SamplerDebouncer(settings.sampler_clear_delay)
        _debouncer.on_idle(get_sampler().clear_cache)
    return _debouncer
