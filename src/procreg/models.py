"""Data models for procreg."""

from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable launch metadata of a spawned process."""

    command: str
    args: tuple[str, ...]
    cwd: str  # '' means the spawning process's working directory
    start_time: float  # time.time() at spawn
    pid: int  # OS process id


@dataclass(slots=True, frozen=True)
class CollectedOutput:
    """Everything read from a process by a full wait."""

    stdout: bytes
    stderr: bytes
    stdout_closed: bool
    stderr_closed: bool

    @property
    def timed_out(self) -> bool:
        """True if either stream stopped on the scope instead of end-of-stream."""
        return not (self.stdout_closed and self.stderr_closed)

    def __iter__(self) -> Iterator[bytes]:
        yield self.stdout
        yield self.stderr
