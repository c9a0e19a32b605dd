"""Bounded, cancellable reads from blocking byte streams.

A pipe read has no native cancellation, so every bounded read runs on a
daemon worker thread that races the caller's scope. When the scope wins the
worker is abandoned, not aborted: it keeps blocking until the stream yields
data or closes. Its completion slot never blocks it, and a StreamReader
hands an abandoned worker's chunk to the next caller, so a stream never has
more than one worker in flight.
"""

import logging
import threading
from typing import BinaryIO

from procreg.config import CHUNK_SIZE
from procreg.errors import ReadTimeoutError, StreamClosedError
from procreg.scope import Scope

logger = logging.getLogger(__name__)

# Longest single wait, so that Scope.cancel() is noticed promptly.
CANCEL_CHECK_INTERVAL = 0.05


class _PendingRead:
    """Completion slot of one worker thread. Written exactly once."""

    __slots__ = ("done", "data", "error", "thread")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.data = b""
        self.error: Exception | None = None
        self.thread: threading.Thread | None = None


class StreamReader:
    """
    Chunked reader over one binary stream of a child process.

    Not meant to be shared by concurrent callers: it stays consistent
    (every chunk goes to exactly one caller), but concurrent callers see
    chunks in no particular order.
    """

    def __init__(
        self,
        stream: BinaryIO,
        *,
        chunk_size: int = CHUNK_SIZE,
        name: str = "stream",
    ) -> None:
        """
        Initialize the StreamReader.

        Args:
            stream: Buffered binary stream (must provide read1()).
            chunk_size: Maximum number of bytes returned per read.
            name: Label used in thread names and error messages.
        """
        self._stream = stream
        self._chunk_size = chunk_size
        self._name = name
        self._lock = threading.Lock()
        self._pending: _PendingRead | None = None
        self._eof = False
        self._closed = False

    @property
    def name(self) -> str:
        """Label used in thread names and error messages."""
        return self._name

    @property
    def at_eof(self) -> bool:
        """Check if end of stream has been delivered to a caller."""
        return self._eof

    @property
    def closed(self) -> bool:
        """Check if close() was called."""
        return self._closed

    @property
    def inflight(self) -> bool:
        """Check if a worker thread is still blocked reading."""
        pending = self._pending
        return pending is not None and not pending.done.is_set()

    def read(self, scope: Scope) -> bytes:
        """
        Read up to chunk_size bytes of newly available data.

        Args:
            scope: Bounds how long the call may block.

        Returns:
            A non-empty chunk, in stream order.

        Raises:
            ReadTimeoutError: The scope is or became expired before data arrived.
            StreamClosedError: The stream reached end of file or was closed.
        """
        while True:
            if scope.expired:
                raise ReadTimeoutError(f"timeout reading {self._name}")

            with self._lock:
                if self._eof or self._closed:
                    raise StreamClosedError(f"{self._name} is closed")
                pending = self._pending
                if pending is None:
                    pending = self._start_worker()
                    self._pending = pending

            if not self._await(pending, scope):
                raise ReadTimeoutError(f"timeout reading {self._name}")

            with self._lock:
                if self._pending is not pending:
                    # Another caller claimed this chunk
                    continue
                self._pending = None
                if pending.error is not None or not pending.data:
                    self._eof = True

            if pending.error is not None:
                raise StreamClosedError(f"{self._name} is closed") from pending.error
            if not pending.data:
                raise StreamClosedError(f"{self._name} reached end of stream")
            return pending.data

    def close(self) -> None:
        """
        Close the reader and its stream.

        If a worker is still blocked on the stream, closing the stream is left
        to that worker once its read returns.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            busy = self._pending is not None and not self._pending.done.is_set()
        if not busy:
            self._stream.close()

    def _start_worker(self) -> _PendingRead:
        pending = _PendingRead()
        pending.thread = threading.Thread(
            target=self._read_into,
            args=(pending,),
            daemon=True,
            name=f"StreamReader-{self._name}",
        )
        pending.thread.start()
        return pending

    def _read_into(self, pending: _PendingRead) -> None:
        """Worker body: one blocking read, result parked in the slot."""
        try:
            pending.data = self._stream.read1(self._chunk_size)
        except (OSError, ValueError) as exc:
            pending.error = exc
        finally:
            with self._lock:
                pending.done.set()
                close_stream = self._closed
            if close_stream:
                logger.debug("Closing %s after in-flight read", self._name)
                self._stream.close()

    @staticmethod
    def _await(pending: _PendingRead, scope: Scope) -> bool:
        """Wait for the worker; False once the scope has expired, done or not."""
        while True:
            remaining = scope.remaining()
            if remaining is None:
                timeout = CANCEL_CHECK_INTERVAL
            else:
                timeout = min(remaining, CANCEL_CHECK_INTERVAL)
            done = pending.done.wait(timeout=timeout)
            if scope.expired:
                return False
            if done:
                return True


def read_with_timeout(
    stream: BinaryIO,
    scope: Scope,
    chunk_size: int = CHUNK_SIZE,
) -> bytes:
    """
    Perform a single bounded read from stream.

    One-shot form of StreamReader.read(): if the scope wins, the abandoned
    worker's chunk is discarded. Use a StreamReader to read a stream
    repeatedly without losing data.
    """
    return StreamReader(stream, chunk_size=chunk_size).read(scope)
