"""
Batch and delivery data models.

Batches and everything derived from them are frozen dataclasses so they can
be handed between tasks without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from .types import BatchState, FailureReason, FlushReason
from .utils import freeze_record, generate_id, utc_now


@dataclass(frozen=True)
class Batch:
    """Immutable, ordered group of records flushed together.

    Attributes:
        records: Read-only copies of the records, in add() order
        sequence: Per-buffer flush counter (1, 2, 3, ...)
        flush_reason: What triggered the flush
        batch_id: Unique id (uuid hex)
        created_at: Flush time (UTC)
    """

    records: tuple[Mapping[str, Any], ...]
    sequence: int = 0
    flush_reason: FlushReason = FlushReason.MANUAL
    batch_id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def of(
        cls,
        records: Iterable[Mapping[str, Any]],
        *,
        sequence: int = 0,
        flush_reason: FlushReason = FlushReason.MANUAL,
    ) -> "Batch":
        """Build a batch, validating and freezing each record."""
        return cls(
            records=tuple(freeze_record(r) for r in records),
            sequence=sequence,
            flush_reason=flush_reason,
        )

    def __len__(self) -> int:
        return len(self.records)

    def subset(self, indexes: Iterable[int]) -> "Batch":
        """New batch holding only the records at ``indexes`` (same sequence)."""
        return Batch(
            records=tuple(self.records[i] for i in indexes),
            sequence=self.sequence,
            flush_reason=self.flush_reason,
        )


@dataclass(frozen=True)
class RejectedRecord:
    """A record the ingestion service refused (bad shape/type). Never retried."""

    index: int
    reason: str


@dataclass(frozen=True)
class SendResult:
    """Outcome of one BatchSender.send_batch() call that reached the service."""

    accepted_count: int
    rejected: tuple[RejectedRecord, ...] = ()

    @classmethod
    def all_accepted(cls, batch: Batch) -> "SendResult":
        return cls(accepted_count=len(batch))

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)


@dataclass(frozen=True)
class FailedBatch:
    """Records that could not be ingested, owned by the dead-letter sink.

    For validation failures ``batch`` holds only the rejected subset; for
    transport/sender/shutdown failures it is the whole source batch.
    """

    batch: Batch
    reason: FailureReason
    error: str
    retry_count: int = 0
    source_batch_id: str | None = None
    record_errors: tuple[str, ...] = ()  # per-record reason, aligned with batch.records
    failed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class DeliveryReport:
    """Final outcome of RetryCoordinator.send() for one batch."""

    batch_id: str
    state: BatchState
    attempts: int
    retries: int
    accepted_count: int
    dead_lettered_count: int
    reasons: tuple[FailureReason, ...] = ()

    @property
    def fully_accepted(self) -> bool:
        return self.state == BatchState.DELIVERED and self.dead_lettered_count == 0
