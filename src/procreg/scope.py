"""Cancellation scopes bounding how long reads may block."""

import threading
import time


class Scope:
    """
    A deadline, an explicit cancel signal, or both.

    Expiry is sticky: once the deadline has passed or cancel() was called,
    the scope stays expired for good.
    """

    def __init__(self, timeout: float | None = None) -> None:
        """
        Initialize the Scope.

        Args:
            timeout: Seconds from now until the scope expires. None means the
                scope only ends through cancel().
        """
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._cancelled = threading.Event()

    @classmethod
    def unbounded(cls) -> "Scope":
        """Create a scope with no deadline."""
        return cls()

    @property
    def deadline(self) -> float | None:
        """Deadline on the time.monotonic() clock, or None."""
        return self._deadline

    @property
    def cancelled(self) -> bool:
        """Check if cancel() was called."""
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        """Check if the scope has ended, by deadline or by cancel()."""
        if self._cancelled.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def cancel(self) -> None:
        """End the scope now."""
        self._cancelled.set()

    def remaining(self) -> float | None:
        """Seconds left before expiry; None for an unbounded, live scope."""
        if self._cancelled.is_set():
            return 0.0
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the scope expires or timeout seconds pass.

        Returns:
            True if the scope has expired.
        """
        if timeout is None:
            while not self.expired:
                self._cancelled.wait(timeout=self.remaining())
            return True

        remaining = self.remaining()
        self._cancelled.wait(timeout=timeout if remaining is None else min(timeout, remaining))
        return self.expired

    def __repr__(self) -> str:
        return f"Scope(remaining={self.remaining()!r}, cancelled={self.cancelled})"
