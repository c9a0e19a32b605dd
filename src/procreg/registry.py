"""Process registry: spawn child processes and address them by identifier."""

import itertools
import logging
import threading
from collections.abc import Sequence

from procreg.config import RegistryConfig
from procreg.errors import (
    LaunchError,
    ProcessNotFoundError,
    ProcregError,
    ReadTimeoutError,
    StreamClosedError,
)
from procreg.handle import ProcessHandle
from procreg.models import CollectedOutput, ProcessInfo
from procreg.reader import StreamReader
from procreg.scope import Scope

logger = logging.getLogger(__name__)


class Registry:
    """
    In-memory registry of spawned processes.

    Identifiers come from a counter seeded at config.first_id. They are
    allocated under the registry lock once a launch has succeeded, so they
    are unique, strictly increasing and never reused. Entries stay after their
    process exits until remove(), prune() or close() drops them.

    Thread-safe for spawning and lookups. Reading the same stream of one
    process from several threads at once is up to the caller to avoid.
    """

    def __init__(self, name: str = "", config: RegistryConfig | None = None) -> None:
        """
        Initialize the Registry.

        Args:
            name: Label used in log messages only.
            config: Registry tunables. Defaults to RegistryConfig().
        """
        self._name = name
        self._config = config or RegistryConfig()
        self._lock = threading.Lock()
        self._ids = itertools.count(self._config.first_id)
        self._handles: dict[int, ProcessHandle] = {}
        self._closed = False

    @property
    def name(self) -> str:
        """Label used in log messages."""
        return self._name

    @property
    def config(self) -> RegistryConfig:
        """Tunables shared by every process of this registry."""
        return self._config

    def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: str | None = None,
        *,
        scope: Scope | None = None,
    ) -> int:
        """
        Launch a child process and register it.

        Args:
            command: Executable to run.
            args: Arguments passed after the executable.
            cwd: Working directory; None or '' keeps the current one.
            scope: Bounds every read on the new process. Unbounded if None.

        Returns:
            The identifier of the new process.

        Raises:
            LaunchError: The process could not be started, or the registry
                is closed.
        """
        if self._closed:
            raise LaunchError(f"registry {self._name!r} is closed")
        handle = ProcessHandle.launch(
            command, args, cwd, scope or Scope.unbounded(), self._config
        )

        with self._lock:
            closed = self._closed
            if not closed:
                proc_id = next(self._ids)
                self._handles[proc_id] = handle
        if closed:
            handle.close()
            raise LaunchError(f"registry {self._name!r} is closed")

        logger.debug("Registry %r: process %d is pid=%d", self._name, proc_id, handle.pid)
        return proc_id

    def spawn_with_scope(
        self,
        scope: Scope,
        command: str,
        args: Sequence[str] = (),
        cwd: str | None = None,
    ) -> int:
        """Launch a child process whose reads are bounded by scope."""
        return self.spawn(command, args, cwd, scope=scope)

    def fetch_stdout(self, proc_id: int) -> bytes:
        """
        Read one chunk of stdout.

        Raises:
            ProcessNotFoundError: Unknown identifier.
            ReadTimeoutError: The process's scope ended before data arrived.
            StreamClosedError: stdout is exhausted.
        """
        return self._get(proc_id).read_stdout()

    def fetch_stderr(self, proc_id: int) -> bytes:
        """Read one chunk of stderr. Same errors as fetch_stdout()."""
        return self._get(proc_id).read_stderr()

    def fetch_all(self, proc_id: int) -> tuple[bytes, bytes]:
        """
        Read one chunk from each stream.

        A stream whose read fails contributes b"". The stdout error is raised
        only if both reads fail.
        """
        handle = self._get(proc_id)
        stdout_error: ProcregError | None = None
        try:
            stdout = handle.read_stdout()
        except ProcregError as exc:
            stdout, stdout_error = b"", exc
        try:
            stderr = handle.read_stderr()
        except ProcregError:
            if stdout_error is not None:
                raise stdout_error
            stderr = b""
        return stdout, stderr

    def wait_output(self, proc_id: int) -> CollectedOutput:
        """
        Read stdout until it fails, then stderr until it fails.

        Read failures end the corresponding loop and are not raised; the
        result tells, per stream, whether it ended on end-of-stream or on the
        scope. With an unbounded scope this blocks until both streams close.

        Raises:
            ProcessNotFoundError: Unknown identifier.
        """
        handle = self._get(proc_id)
        stdout, stdout_closed = _drain(handle.stdout, handle.scope)
        stderr, stderr_closed = _drain(handle.stderr, handle.scope)
        return CollectedOutput(
            stdout=stdout,
            stderr=stderr,
            stdout_closed=stdout_closed,
            stderr_closed=stderr_closed,
        )

    def running(self, proc_id: int) -> bool:
        """Check if the process exists and its exit has not been observed."""
        with self._lock:
            handle = self._handles.get(proc_id)
        return handle is not None and handle.running()

    def returncode(self, proc_id: int) -> int | None:
        """Get the last observed exit status (None while running)."""
        return self._get(proc_id).returncode

    def kill(self, proc_id: int) -> None:
        """
        Kill the process.

        Raises:
            ProcessNotFoundError: Unknown identifier.
            KillError: The process already exited or could not be signalled.
        """
        self._get(proc_id).kill()

    def write_stdin(self, proc_id: int, data: bytes) -> None:
        """Write data to the process's stdin."""
        self._get(proc_id).write_stdin(data)

    def close_stdin(self, proc_id: int) -> None:
        """Close the process's stdin, signalling end of input."""
        self._get(proc_id).close_stdin()

    def list(self) -> dict[int, ProcessInfo]:
        """Snapshot of the launch metadata of every registered process."""
        with self._lock:
            return {proc_id: handle.info for proc_id, handle in self._handles.items()}

    def remove(self, proc_id: int) -> ProcessInfo:
        """
        Drop a process from the registry.

        The process is killed if it is still running and its streams are
        closed. The identifier is not handed out again.
        """
        with self._lock:
            handle = self._handles.pop(proc_id, None)
        if handle is None:
            raise ProcessNotFoundError(proc_id)
        self._close_handle(proc_id, handle)
        logger.debug("Registry %r: removed process %d", self._name, proc_id)
        return handle.info

    def prune(self) -> "list[int]":
        """Drop every process whose exit has been observed."""
        with self._lock:
            exited = {
                proc_id: handle for proc_id, handle in self._handles.items() if not handle.running()
            }
            for proc_id in exited:
                del self._handles[proc_id]
        for proc_id, handle in exited.items():
            self._close_handle(proc_id, handle)
        if exited:
            logger.debug("Registry %r: pruned %d processes", self._name, len(exited))
        return sorted(exited)

    def close(self) -> None:
        """Kill every running process, close all streams and empty the registry."""
        with self._lock:
            self._closed = True
            handles = dict(self._handles)
            self._handles.clear()
        for proc_id, handle in handles.items():
            self._close_handle(proc_id, handle)
        logger.debug("Registry %r closed (%d processes)", self._name, len(handles))

    def __enter__(self) -> "Registry":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def _close_handle(self, proc_id: int, handle: ProcessHandle) -> None:
        """Close one dropped handle; a failure is logged so teardown carries on."""
        try:
            handle.close()
        except (OSError, ProcregError) as exc:
            logger.warning(
                "Registry %r: error closing process %d (pid=%d): %s",
                self._name,
                proc_id,
                handle.pid,
                exc,
            )

    def _get(self, proc_id: int) -> ProcessHandle:
        with self._lock:
            handle = self._handles.get(proc_id)
        if handle is None:
            raise ProcessNotFoundError(proc_id)
        return handle


def _drain(reader: StreamReader, scope: Scope) -> tuple[bytes, bool]:
    """Read chunks until a read fails; True if it failed on end-of-stream."""
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(reader.read(scope))
        except StreamClosedError:
            return b"".join(chunks), True
        except ReadTimeoutError:
            return b"".join(chunks), False


def create_registry(name: str = "", config: RegistryConfig | None = None) -> Registry:
    """Create an empty Registry."""
    return Registry(name, config)
