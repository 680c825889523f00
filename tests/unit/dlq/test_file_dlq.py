"""
Unit tests for the file-based dead-letter sink.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from stream_ingest import (
    Batch,
    DeadLetterStorageError,
    FailedBatch,
    FailureReason,
    FileDeadLetterSink,
)


def _failed(n: int, reason=FailureReason.TRANSPORT_EXHAUSTED, error="boom", **kw) -> FailedBatch:
    batch = Batch.of(({"i": i} for i in range(n)), sequence=7)
    return FailedBatch(
        batch=batch, reason=reason, error=error, source_batch_id=batch.batch_id, **kw
    )


@pytest.mark.asyncio
async def test_file_dlq_save_and_replay(tmp_path, sample_record):
    p = tmp_path / "dlq.ndjson"
    dlq = FileDeadLetterSink(p)

    rejected = FailedBatch(
        batch=Batch.of([sample_record], sequence=2),
        reason=FailureReason.VALIDATION,
        error="1 of 4 record(s) rejected",
        record_errors=("reading: expected int",),
    )
    await dlq.store(_failed(2, retry_count=5))
    await dlq.store(rejected)

    entries = await dlq.replay(10)
    assert len(entries) == 2

    first, second = entries
    assert first.reason == FailureReason.TRANSPORT_EXHAUSTED
    assert first.retry_count == 5
    assert first.sequence == 7
    assert [r["i"] for r in first.records] == [0, 1]
    assert "boom" in first.error

    assert second.reason == FailureReason.VALIDATION
    assert second.record_errors == ["reading: expected int"]
    assert second.records[0]["ts"].startswith("2024-01-01T00:00:00")
    assert second.records[0]["tags"] == {"site": "north", "levels": [1, 2, 3]}
    assert second.failed_at.tzinfo is not None


@pytest.mark.asyncio
async def test_dlq_replay_limit(tmp_path):
    dlq = FileDeadLetterSink(tmp_path / "dlq.ndjson")
    for i in range(10):
        await dlq.store(_failed(1, error=f"error-{i}"))

    assert len(await dlq.replay(5)) == 5
    assert len(await dlq.replay(None)) == 10


@pytest.mark.asyncio
async def test_dlq_replay_missing_file(tmp_path):
    dlq = FileDeadLetterSink(tmp_path / "nonexistent.ndjson", mkdirs=False)
    assert await dlq.replay(10) == []


@pytest.mark.asyncio
async def test_dlq_creates_parent_dirs(tmp_path):
    p = tmp_path / "nested" / "deeper" / "dlq.ndjson"
    dlq = FileDeadLetterSink(p)
    await dlq.store(_failed(1))
    assert p.exists()


@pytest.mark.asyncio
async def test_dlq_concurrent_writes(tmp_path):
    """Concurrent stores are serialized; no entry lost or interleaved."""
    dlq = FileDeadLetterSink(tmp_path / "dlq.ndjson")

    await asyncio.gather(*[dlq.store(_failed(1, error=f"error-{i}")) for i in range(20)])

    entries = await dlq.replay(100)
    assert len(entries) == 20
    assert sorted(e.error for e in entries) == sorted(f"error-{i}" for i in range(20))


@pytest.mark.asyncio
async def test_dlq_write_failure_is_fatal(tmp_path):
    """Storage errors surface as DeadLetterStorageError."""
    target = tmp_path / "is_a_directory"
    target.mkdir()
    dlq = FileDeadLetterSink(target)

    with pytest.raises(DeadLetterStorageError):
        await dlq.store(_failed(1))


@pytest.mark.asyncio
async def test_failed_at_defaults_to_utc_now():
    failed = _failed(1)
    assert failed.failed_at <= datetime.now(timezone.utc)
