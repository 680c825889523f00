"""
Dead-letter sinks.

A DeadLetterSink takes ownership of records that could not be ingested.
Storage failures are raised as DeadLetterStorageError and must reach the
process supervisor: losing dead letters silently is worse than crashing.
"""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .errors import DeadLetterStorageError
from .models import FailedBatch
from .types import FailureReason
from .utils import to_jsonable


class DeadLetterEntry(BaseModel):
    """One dead-lettered batch as stored on disk (one NDJSON line)."""

    batch_id: str
    source_batch_id: Optional[str] = None
    sequence: int
    reason: FailureReason
    error: str
    retry_count: int = 0
    failed_at: datetime
    created_at: datetime
    records: list[dict[str, Any]] = Field(default_factory=list)
    record_errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_failed_batch(cls, failed: FailedBatch) -> "DeadLetterEntry":
        batch = failed.batch
        return cls(
            batch_id=batch.batch_id,
            source_batch_id=failed.source_batch_id,
            sequence=batch.sequence,
            reason=failed.reason,
            error=failed.error,
            retry_count=failed.retry_count,
            failed_at=failed.failed_at,
            created_at=batch.created_at,
            records=[to_jsonable(r) for r in batch.records],
            record_errors=list(failed.record_errors),
        )


class DeadLetterSink(ABC):
    """Durable destination for FailedBatch objects."""

    @abstractmethod
    async def store(self, failed: FailedBatch) -> None:
        """Persist ``failed``; raise DeadLetterStorageError if that is impossible."""
        ...


class MemoryDeadLetterSink(DeadLetterSink):
    """Keeps failed batches in a list. For embedding and tests."""

    def __init__(self) -> None:
        self.batches: list[FailedBatch] = []

    async def store(self, failed: FailedBatch) -> None:
        self.batches.append(failed)

    @property
    def record_count(self) -> int:
        return sum(len(fb.batch) for fb in self.batches)


class FileDeadLetterSink(DeadLetterSink):
    """Append-only NDJSON dead-letter file.

    Writes are serialized with an asyncio lock and executed in a worker
    thread so the event loop never blocks on disk I/O.

    Example:
        dlq = FileDeadLetterSink(".dlq/records.ndjson")
        await dlq.store(failed_batch)
        entries = await dlq.replay(100)
    """

    def __init__(self, path: str | os.PathLike, *, mkdirs: bool = True, fsync: bool = False):
        self.path = Path(path)
        self.fsync = fsync
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def store(self, failed: FailedBatch) -> None:
        try:
            line = DeadLetterEntry.from_failed_batch(failed).model_dump_json() + "\n"
        except (TypeError, ValueError) as exc:
            raise DeadLetterStorageError(f"cannot serialize dead letter: {exc}") from exc

        async with self._lock:
            try:
                await asyncio.to_thread(self._append, line)
            except OSError as exc:
                logger.error(f"Dead-letter write to {self.path} failed: {exc}")
                raise DeadLetterStorageError(f"cannot write {self.path}: {exc}") from exc

        logger.debug(
            f"Dead-lettered {len(failed.batch)} record(s) "
            f"reason={failed.reason.value} batch={failed.batch.batch_id}"
        )

    async def replay(self, max_records: Optional[int] = 1000) -> list[DeadLetterEntry]:
        """Read back up to ``max_records`` entries (oldest first). None reads all."""
        async with self._lock:
            return await asyncio.to_thread(self._read, max_records)

    def _append(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line)
            fh.flush()
            if self.fsync:
                os.fsync(fh.fileno())

    def _read(self, max_records: Optional[int]) -> list[DeadLetterEntry]:
        if not self.path.exists():
            return []
        out: list[DeadLetterEntry] = []
        with open(self.path, "r", encoding="utf-8") as fh:
            for line in fh:
                if max_records is not None and len(out) >= max_records:
                    break
                line = line.strip()
                if line:
                    out.append(DeadLetterEntry.model_validate_json(line))
        return out
