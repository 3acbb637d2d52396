"""Work queue of Distributions waiting to be reconciled."""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import timedelta

from ..models.domain.kubernetes import ObjectKey
from ..models.index import QueueState

__all__ = ["WorkQueue"]


class WorkQueue:
    """Queue of Distribution keys shared by the reconcile workers.

    The queue guarantees that a key is handed to at most one worker at a
    time. A key added while it is queued is coalesced into the existing
    entry, and a key added while a worker is processing it is queued again
    only once that worker calls `done`. Keys can be added after a delay, and
    keys whose reconcile keeps failing are retried with exponential backoff.

    Parameters
    ----------
    backoff_initial
        Delay before the first retry of a failed key.
    backoff_max
        Upper bound on the retry delay.
    """

    def __init__(
        self,
        *,
        backoff_initial: timedelta = timedelta(seconds=1),
        backoff_max: timedelta = timedelta(minutes=5),
    ) -> None:
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._queue: deque[ObjectKey] = deque()
        self._dirty: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._failures: dict[ObjectKey, int] = {}
        self._delayed: dict[ObjectKey, asyncio.TimerHandle] = {}
        self._ready = asyncio.Event()
        self._shutdown = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_shutdown(self) -> bool:
        """Whether `shutdown` has been called."""
        return self._shutdown

    def add(self, key: ObjectKey) -> None:
        """Queue a key for reconciliation.

        Parameters
        ----------
        key
            Key of the Distribution.
        """
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._ready.set()

    def add_after(self, key: ObjectKey, delay: timedelta) -> None:
        """Queue a key once a delay has passed.

        If the key is already waiting for a delay that ends sooner, the
        earlier time is kept.

        Parameters
        ----------
        key
            Key of the Distribution.
        delay
            How long to wait before queuing the key.
        """
        if self._shutdown:
            return
        seconds = delay.total_seconds()
        if seconds <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        existing = self._delayed.get(key)
        if existing:
            if existing.when() <= loop.time() + seconds:
                return
            existing.cancel()
        self._delayed[key] = loop.call_later(seconds, self._add_delayed, key)

    def add_rate_limited(self, key: ObjectKey) -> timedelta:
        """Queue a key after a delay that grows with each failure.

        Parameters
        ----------
        key
            Key of the Distribution whose reconcile failed.

        Returns
        -------
        datetime.timedelta
            Delay before the key is retried.
        """
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self._backoff_initial * 2**failures, self._backoff_max)
        self.add_after(key, delay)
        return delay

    def done(self, key: ObjectKey) -> None:
        """Mark a key as no longer being processed.

        If the key was added again while it was being processed, it is put
        back in the queue.

        Parameters
        ----------
        key
            Key returned by `get`.
        """
        self._processing.discard(key)
        if key in self._dirty and not self._shutdown:
            self._queue.append(key)
            self._ready.set()

    def forget(self, key: ObjectKey) -> None:
        """Reset the failure count of a key after a successful reconcile."""
        self._failures.pop(key, None)

    async def get(self) -> ObjectKey | None:
        """Wait for the next key to process.

        The caller must call `done` with the key once it has been processed.

        Returns
        -------
        ObjectKey or None
            Next key, or `None` if the queue has been shut down.
        """
        while not self._shutdown:
            if self._queue:
                key = self._queue.popleft()
                self._dirty.discard(key)
                self._processing.add(key)
                return key
            self._ready.clear()
            await self._ready.wait()
        return None

    def num_requeues(self, key: ObjectKey) -> int:
        """Return the number of consecutive failures of a key."""
        return self._failures.get(key, 0)

    def shutdown(self) -> None:
        """Stop handing out keys and wake up all waiting workers."""
        self._shutdown = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._ready.set()

    def snapshot(self) -> QueueState:
        """Return the current contents of the queue.

        Returns
        -------
        QueueState
            Keys that are queued, being processed, waiting for a delay, and
            failing.
        """
        failing = {str(k): n for k, n in self._failures.items()}
        return QueueState(
            queued=[str(k) for k in self._queue],
            processing=sorted(str(k) for k in self._processing),
            delayed=sorted(str(k) for k in self._delayed),
            failing=dict(sorted(failing.items())),
        )

    def _add_delayed(self, key: ObjectKey) -> None:
        self._delayed.pop(key, None)
        self.add(key)
