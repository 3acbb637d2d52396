"""Tests for the work queue of Distributions."""

import asyncio
from datetime import timedelta

import pytest

from stackoperator.models.domain.kubernetes import ObjectKey
from stackoperator.services.workqueue import WorkQueue

from ..support.wait import wait_for

BASIC = ObjectKey("llama", "basic")
OTHER = ObjectKey("llama", "other")


@pytest.mark.asyncio
async def test_coalesce() -> None:
    queue = WorkQueue()
    queue.add(BASIC)
    queue.add(OTHER)
    queue.add(BASIC)
    assert len(queue) == 2
    assert queue.snapshot().queued == ["llama/basic", "llama/other"]

    assert await queue.get() == BASIC
    assert await queue.get() == OTHER
    assert len(queue) == 0
    assert queue.snapshot().processing == ["llama/basic", "llama/other"]


@pytest.mark.asyncio
async def test_single_worker_per_key() -> None:
    queue = WorkQueue()
    queue.add(BASIC)
    assert await queue.get() == BASIC

    # Adding a key that is being processed defers it until it is done, so
    # that no two workers reconcile the same Distribution.
    queue.add(BASIC)
    queue.add(BASIC)
    assert len(queue) == 0
    queue.done(BASIC)
    assert queue.snapshot().queued == ["llama/basic"]
    assert await queue.get() == BASIC

    # Without a new add, done does not requeue.
    queue.done(BASIC)
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_get_waits() -> None:
    queue = WorkQueue()
    task = asyncio.create_task(queue.get())
    await asyncio.sleep(0.01)
    assert not task.done()

    queue.add(BASIC)
    assert await asyncio.wait_for(task, timeout=1) == BASIC


@pytest.mark.asyncio
async def test_add_after() -> None:
    queue = WorkQueue()
    queue.add_after(BASIC, timedelta(seconds=0.05))
    assert len(queue) == 0
    assert queue.snapshot().delayed == ["llama/basic"]

    # A later delay does not replace an earlier one.
    queue.add_after(BASIC, timedelta(minutes=5))
    await wait_for(lambda: len(queue) == 1, timeout=1)
    assert queue.snapshot().delayed == []

    # A delay of zero queues immediately.
    queue.add_after(OTHER, timedelta(seconds=0))
    assert queue.snapshot().queued == ["llama/basic", "llama/other"]


@pytest.mark.asyncio
async def test_add_after_shorter() -> None:
    queue = WorkQueue()
    queue.add_after(BASIC, timedelta(minutes=5))

    # A shorter delay replaces a longer one.
    queue.add_after(BASIC, timedelta(seconds=0.05))
    await wait_for(lambda: len(queue) == 1, timeout=1)
    queue.shutdown()


@pytest.mark.asyncio
async def test_rate_limited() -> None:
    queue = WorkQueue(
        backoff_initial=timedelta(seconds=1),
        backoff_max=timedelta(seconds=5),
    )
    delays = [queue.add_rate_limited(BASIC) for _ in range(5)]
    assert delays == [
        timedelta(seconds=1),
        timedelta(seconds=2),
        timedelta(seconds=4),
        timedelta(seconds=5),
        timedelta(seconds=5),
    ]
    assert queue.num_requeues(BASIC) == 5
    assert queue.snapshot().failing == {"llama/basic": 5}

    queue.forget(BASIC)
    assert queue.num_requeues(BASIC) == 0
    assert queue.add_rate_limited(BASIC) == timedelta(seconds=1)
    queue.shutdown()


@pytest.mark.asyncio
async def test_shutdown() -> None:
    queue = WorkQueue()
    waiters = [asyncio.create_task(queue.get()) for _ in range(3)]
    queue.add_after(BASIC, timedelta(minutes=5))
    await asyncio.sleep(0.01)

    queue.shutdown()
    assert queue.is_shutdown
    results = await asyncio.wait_for(asyncio.gather(*waiters), timeout=1)
    assert results == [None, None, None]
    assert queue.snapshot().delayed == []

    # Nothing can be added after shutdown.
    queue.add(OTHER)
    assert len(queue) == 0
    assert await queue.get() is None
