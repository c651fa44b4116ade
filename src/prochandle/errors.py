"""Exception hierarchy for prochandle."""


class ProcHandleError(Exception):
    """Base for all prochandle errors."""


class ResourceClosedError(ProcHandleError):
    """The process resource was used after being closed."""

    def __init__(self, message: str = "Process is closed.") -> None:
        super().__init__(message)


class ResourceNotRunningError(ProcHandleError):
    """The process resource was used before it finished opening."""

    def __init__(self, message: str = "Process not running.") -> None:
        super().__init__(message)


class SpawnError(ProcHandleError):
    """The underlying process could not be created."""


class StatLookupError(ProcHandleError):
    """A discovery, tree or usage lookup failed."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class ProcessNotFoundError(StatLookupError):
    """The pid being looked up does not exist (or is a zombie)."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"No such process: {pid}", pid=pid)


class TerminationError(ProcHandleError):
    """A termination signal could not be delivered."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class ValidationError(ProcHandleError, ValueError):
    """Malformed call arguments."""
