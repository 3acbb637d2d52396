"""Timeout class for Kubernetes operations."""

from __future__ import annotations

from datetime import timedelta

from safir.datetime import current_datetime

__all__ = ["Timeout"]


class Timeout:
    """Track a cumulative timeout on a series of operations.

    A single reconcile of a Distribution issues a sequence of Kubernetes API
    calls, each of which accepts its own request timeout, but the whole
    sequence should be abandoned if the control plane stops responding. This
    class tracks the overall deadline and hands out the remaining time to each
    call.

    Parameters
    ----------
    timeout
        Total time allowed for the sequence of operations.
    """

    def __init__(self, timeout: timedelta) -> None:
        self._timeout = timeout
        self._start = current_datetime(microseconds=True)

    def elapsed(self) -> float:
        """Elapsed time since the timeout started.

        Returns
        -------
        float
            Seconds elapsed since the object was created.
        """
        now = current_datetime(microseconds=True)
        return (now - self._start).total_seconds()

    def error(self, operation: str) -> str:
        """Generate an error message for an expired timeout.

        Parameters
        ----------
        operation
            Operation that timed out.

        Returns
        -------
        str
            Error message including the elapsed time.
        """
        return f"{operation} timed out after {self.elapsed()}s"

    def left(self) -> float:
        """Return the amount of time remaining in seconds.

        Returns
        -------
        float
            Seconds remaining in the timeout.

        Raises
        ------
        TimeoutError
            Raised if the timeout has expired.
        """
        now = current_datetime(microseconds=True)
        left = (self._timeout - (now - self._start)).total_seconds()
        if left <= 0.0:
            raise TimeoutError(self.error("Reconcile"))
        return left
