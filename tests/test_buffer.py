"""
Detail Buffer Tests

Verifies:
- Size-triggered flush
- Single idle timer, cancelled by an explicit flush
- FIFO order
- Failed writes are dropped without stopping the batch
"""

import asyncio

import pytest

from observability.buffer import AsyncioScheduler, DetailBuffer
from observability.models import BufferedDetailWrite, DetailOp


def op(n: int) -> BufferedDetailWrite:
    return BufferedDetailWrite(op=DetailOp.CREATE, trace_id="trc_x_deadbeef", detail_id=f"dtl_{n}", payload={"n": n})


@pytest.fixture
def written():
    return []


@pytest.fixture
def buffer(written, scheduler):
    async def write(operation):
        written.append(operation.detail_id)

    return DetailBuffer(write, max_size=3, flush_interval=5.0, scheduler=scheduler)


@pytest.mark.asyncio
async def test_add_below_threshold_only_arms_timer(buffer, written, scheduler):
    await buffer.add(op(1))
    await buffer.add(op(2))

    assert written == []
    assert len(buffer) == 2
    assert len(scheduler.armed) == 1
    assert scheduler.armed[0].delay == 5.0


@pytest.mark.asyncio
async def test_threshold_flushes_in_fifo_order(buffer, written, scheduler):
    for n in (1, 2, 3):
        await buffer.add(op(n))

    assert written == ["dtl_1", "dtl_2", "dtl_3"]
    assert len(buffer) == 0
    assert scheduler.armed == []


@pytest.mark.asyncio
async def test_timer_flush(buffer, written, scheduler):
    await buffer.add(op(1))

    await scheduler.fire()

    assert written == ["dtl_1"]
    assert len(buffer) == 0


@pytest.mark.asyncio
async def test_explicit_flush_cancels_timer(buffer, written, scheduler):
    await buffer.add(op(1))
    timer = scheduler.armed[0]

    flushed = await buffer.flush()

    assert flushed == 1
    assert timer.cancelled
    assert written == ["dtl_1"]


@pytest.mark.asyncio
async def test_failed_write_is_dropped_and_batch_continues(scheduler):
    written = []

    async def write(operation):
        if operation.detail_id == "dtl_2":
            raise RuntimeError("store down")
        written.append(operation.detail_id)

    buffer = DetailBuffer(write, max_size=10, scheduler=scheduler)
    for n in (1, 2, 3):
        await buffer.add(op(n))

    assert await buffer.flush() == 3
    assert written == ["dtl_1", "dtl_3"]
    assert len(buffer) == 0


@pytest.mark.asyncio
async def test_flush_empty_is_noop(buffer, written):
    assert await buffer.flush() == 0
    assert written == []


# ============================================================
# EVENT-LOOP SCHEDULER
# ============================================================

@pytest.mark.asyncio
async def test_asyncio_scheduler_holds_spawned_tasks():
    scheduler = AsyncioScheduler()
    release = asyncio.Event()

    async def background():
        await release.wait()

    task = scheduler.spawn(background())

    assert scheduler.pending_tasks == {task}

    release.set()
    await scheduler.wait_pending()

    assert scheduler.pending_tasks == set()
    assert task.done()


@pytest.mark.asyncio
async def test_real_timer_flush_runs_without_caller():
    written = []

    async def write(operation):
        written.append(operation.detail_id)

    buffer = DetailBuffer(write, max_size=10, flush_interval=0.01, scheduler=AsyncioScheduler())
    await buffer.add(op(1))

    await asyncio.sleep(0.1)

    assert written == ["dtl_1"]


@pytest.mark.asyncio
async def test_drain_waits_for_background_flush(written, scheduler, buffer):
    await buffer.add(op(1))
    scheduler.armed[0].callback()

    assert await buffer.drain() == 0
    assert written == ["dtl_1"]
