"""Registry configuration."""

from dataclasses import dataclass

FIRST_PROCESS_ID = 1004
CHUNK_SIZE = 200
MIN_WATCH_INTERVAL = 0.01


@dataclass(slots=True, frozen=True)
class RegistryConfig:
    """
    Tunables for a Registry.

    Attributes:
        first_id: Identifier handed to the first spawned process.
        chunk_size: Maximum number of bytes returned by one bounded read.
        watch_interval: How often (seconds) a handle's watcher checks its scope.
        kill_on_scope_end: Kill a still-running process once its scope ends.
        kill_children: Also kill the process's descendants on kill().
    """

    first_id: int = FIRST_PROCESS_ID
    chunk_size: int = CHUNK_SIZE
    watch_interval: float = 0.1
    kill_on_scope_end: bool = True
    kill_children: bool = True

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.watch_interval < MIN_WATCH_INTERVAL:
            raise ValueError(
                f"watch_interval must be at least {MIN_WATCH_INTERVAL}s, "
                f"got {self.watch_interval}"
            )
