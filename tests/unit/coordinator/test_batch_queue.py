"""
Unit tests for BatchQueue watermarks and overflow.
"""

import asyncio

import pytest

from stream_ingest import Batch, BatchQueue, PipelineFatalError, QueueFullError


def _batch(n: int = 1) -> Batch:
    return Batch.of({"i": i} for i in range(n))


@pytest.mark.asyncio
async def test_watermark_signals_fire_once_and_recover():
    high_called = 0
    low_called = 0

    async def on_high():
        nonlocal high_called
        high_called += 1

    async def on_low():
        nonlocal low_called
        low_called += 1

    q = BatchQueue(
        max_batches=10, high_watermark=8, low_watermark=4, on_high=on_high, on_low=on_low
    )

    for _ in range(8):
        await q.put(_batch())
    assert q.size == 8
    assert high_called == 1

    for _ in range(5):  # size 8 -> 3
        await q.get()
    assert low_called == 1

    for _ in range(4):  # size 3 -> 7
        await q.put(_batch())
    assert high_called == 1

    await q.put(_batch())  # size 8 crosses again
    assert high_called == 2


@pytest.mark.asyncio
async def test_error_strategy():
    q = BatchQueue(max_batches=2, overflow_strategy="error")
    await q.put(_batch())
    await q.put(_batch())

    with pytest.raises(QueueFullError):
        await q.put(_batch())


@pytest.mark.asyncio
async def test_block_strategy_waits_for_consumer():
    q = BatchQueue(max_batches=1)
    await q.put(_batch())

    blocked = asyncio.create_task(q.put(_batch()))
    await asyncio.sleep(0.05)
    assert not blocked.done()

    await q.get()
    await asyncio.wait_for(blocked, timeout=1.0)
    assert q.size == 1


@pytest.mark.asyncio
async def test_pending_records_and_join():
    q = BatchQueue(max_batches=5)
    await q.put(_batch(3))
    await q.put(_batch(4))
    assert q.pending_records == 7

    b = await q.get()
    assert len(b) == 3
    assert q.pending_records == 4
    q.task_done()

    joiner = asyncio.create_task(q.join())
    await asyncio.sleep(0.01)
    assert not joiner.done()

    await q.get()
    q.task_done()
    await asyncio.wait_for(joiner, timeout=1.0)


@pytest.mark.asyncio
async def test_get_timeout():
    q = BatchQueue(max_batches=1)
    with pytest.raises(asyncio.TimeoutError):
        await q.get(timeout=0.01)


@pytest.mark.asyncio
async def test_fail_wakes_blocked_put_and_refuses_later_puts():
    q = BatchQueue(max_batches=1)
    await q.put(_batch(2))

    blocked = asyncio.create_task(q.put(_batch(3)))
    await asyncio.sleep(0.01)
    assert not blocked.done()

    cause = RuntimeError("worker died")
    q.fail(cause)
    with pytest.raises(PipelineFatalError) as exc_info:
        await asyncio.wait_for(blocked, timeout=1.0)
    assert exc_info.value.__cause__ is cause
    assert q.failed
    assert q.size == 1
    assert q.pending_records == 2

    with pytest.raises(PipelineFatalError):
        await q.put(_batch())
