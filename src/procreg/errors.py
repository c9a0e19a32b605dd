"""Exception hierarchy for procreg."""


class ProcregError(Exception):
    """Base for all registry errors."""


class LaunchError(ProcregError):
    """The child process could not be wired up or started."""


class ProcessNotFoundError(ProcregError, LookupError):
    """No process with the given identifier is registered."""

    def __init__(self, proc_id: int) -> None:
        self.proc_id = proc_id
        super().__init__(f"process '{proc_id}' not exists")


class ReadTimeoutError(ProcregError, TimeoutError):
    """The scope ended before the stream produced data."""


class StreamClosedError(ProcregError, EOFError):
    """The stream is exhausted or closed."""


class KillError(ProcregError):
    """The termination request failed."""
