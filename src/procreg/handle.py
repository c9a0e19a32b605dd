"""Process handles: one spawned child and its streams."""

import logging
import subprocess
import threading
import time
from collections.abc import Sequence

import psutil

from procreg.config import RegistryConfig
from procreg.errors import KillError, LaunchError, StreamClosedError
from procreg.models import ProcessInfo
from procreg.reader import StreamReader
from procreg.scope import Scope

logger = logging.getLogger(__name__)


class ProcessHandle:
    """
    Runtime record of one spawned child process.

    Holds the launch metadata, the psutil.Popen object used for liveness and
    kill, chunked readers over stdout and stderr, the stdin pipe, and the
    scope that bounds every read on this handle.

    A daemon watcher thread records the exit status as soon as the child
    exits and, if configured, kills the child once the scope ends.
    """

    def __init__(
        self,
        info: ProcessInfo,
        popen: psutil.Popen,
        scope: Scope,
        config: RegistryConfig,
    ) -> None:
        self._info = info
        self._popen = popen
        self._scope = scope
        self._config = config
        self.stdout = StreamReader(
            popen.stdout, chunk_size=config.chunk_size, name=f"{info.pid}-stdout"
        )
        self.stderr = StreamReader(
            popen.stderr, chunk_size=config.chunk_size, name=f"{info.pid}-stderr"
        )
        self._stdin = popen.stdin
        self._stdin_lock = threading.Lock()
        self._watcher = threading.Thread(
            target=self._watch_loop,
            daemon=True,
            name=f"ProcessWatcher-{info.pid}",
        )

    @classmethod
    def launch(
        cls,
        command: str,
        args: Sequence[str],
        cwd: str | None,
        scope: Scope,
        config: RegistryConfig,
    ) -> "ProcessHandle":
        """
        Start a child process with all three standard streams piped.

        Args:
            command: Executable to run.
            args: Arguments passed after the executable.
            cwd: Working directory; None or '' keeps the current one.
            scope: Scope bounding every read on the new handle.
            config: Registry configuration.

        Raises:
            LaunchError: The process could not be started or wired up. Nothing
                is left running in that case.
        """
        try:
            popen = psutil.Popen(
                [command, *args],
                cwd=cwd or None,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError, psutil.Error) as exc:
            raise LaunchError(f"cannot start {command!r}: {exc}") from exc

        info = ProcessInfo(
            command=command,
            args=tuple(args),
            cwd=cwd or "",
            start_time=time.time(),
            pid=popen.pid,
        )
        handle = cls(info, popen, scope, config)
        try:
            handle._watcher.start()
        except RuntimeError as exc:
            handle._discard()
            raise LaunchError(f"cannot watch {command!r}: {exc}") from exc

        logger.debug("Started process pid=%d argv=%s cwd=%r", info.pid, [command, *args], cwd)
        return handle

    @property
    def info(self) -> ProcessInfo:
        """Launch metadata of the process."""
        return self._info

    @property
    def pid(self) -> int:
        """OS process id of the child."""
        return self._info.pid

    @property
    def scope(self) -> Scope:
        """Scope bounding every read on this handle."""
        return self._scope

    @property
    def returncode(self) -> int | None:
        """Last observed exit status, None while the process is running."""
        return self._popen.returncode

    @property
    def inflight_reads(self) -> int:
        """Number of reader worker threads still blocked on this handle."""
        return int(self.stdout.inflight) + int(self.stderr.inflight)

    def running(self) -> bool:
        """Check if the exit status has not been observed yet."""
        return self._popen.returncode is None

    def read_stdout(self) -> bytes:
        """Read one chunk of stdout, bounded by the handle scope."""
        return self.stdout.read(self._scope)

    def read_stderr(self) -> bytes:
        """Read one chunk of stderr, bounded by the handle scope."""
        return self.stderr.read(self._scope)

    def write_stdin(self, data: bytes) -> None:
        """
        Write data to the child's stdin and flush it.

        Raises:
            StreamClosedError: stdin was closed or the child stopped reading.
        """
        with self._stdin_lock:
            if self._stdin.closed:
                raise StreamClosedError(f"stdin of process {self.pid} is closed")
            try:
                self._stdin.write(data)
                self._stdin.flush()
            except (OSError, ValueError) as exc:
                raise StreamClosedError(f"stdin of process {self.pid} is closed") from exc

    def close_stdin(self) -> None:
        """Close the child's stdin, signalling end of input."""
        with self._stdin_lock:
            if self._stdin.closed:
                return
            try:
                self._stdin.close()
            except OSError as exc:
                # Unflushed bytes from a failed write; the pipe is closed anyway
                logger.debug("stdin of process pid=%d was already broken: %s", self.pid, exc)

    def kill(self) -> None:
        """
        Kill the process (and its descendants if kill_children is set).

        Raises:
            KillError: The process already exited or could not be signalled.
        """
        if self._popen.returncode is not None:
            raise KillError(f"process {self.pid} already exited")
        try:
            self._kill_tree()
        except psutil.Error as exc:
            raise KillError(f"cannot kill process {self.pid}: {exc}") from exc
        logger.debug("Killed process pid=%d", self.pid)

    def close(self) -> None:
        """Kill the process if it is still running and close all its streams."""
        if self.running():
            try:
                self.kill()
            except KillError as exc:
                logger.warning("Could not kill process pid=%d: %s", self.pid, exc)
        self.close_stdin()
        self.stdout.close()
        self.stderr.close()

    def _kill_tree(self) -> None:
        children = self._popen.children(recursive=True) if self._config.kill_children else []
        self._popen.kill()
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                # Child exited on its own
                continue

    def _watch_loop(self) -> None:
        """Watcher thread body: wait for exit, enforcing the scope."""
        interval = self._config.watch_interval
        while True:
            try:
                self._popen.wait(timeout=interval)
                break
            except psutil.TimeoutExpired:
                pass

            if self._config.kill_on_scope_end and self._scope.expired:
                logger.debug("Scope of process pid=%d ended, killing it", self.pid)
                try:
                    self._kill_tree()
                except psutil.NoSuchProcess:
                    pass  # Exited in the meantime
                self._popen.wait()
                break

        logger.debug("Process pid=%d exited with status %s", self.pid, self._popen.returncode)

    def _discard(self) -> None:
        """Tear down a process whose handle could not be completed."""
        try:
            self._popen.kill()
        except psutil.NoSuchProcess:
            pass
        self._popen.wait()
        for stream in (self._popen.stdin, self._popen.stdout, self._popen.stderr):
            stream.close()
