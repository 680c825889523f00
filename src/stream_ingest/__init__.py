"""stream_ingest: buffered streaming ingestion client.

Producer -> buffer -> bounded batch queue -> delivery workers pipeline with:
- IngestBuffer (size/interval flushing, atomic hand-off)
- RetryCoordinator with bounded exponential backoff
- CircuitBreaker for fault protection
- pluggable BatchSender (HTTP implementation included)
- dead-letter sinks (file-based NDJSON, in-memory)
- Prometheus metrics
- environment-based settings

Usage:
    from stream_ingest import IngestPipeline, HttpBatchSender, FileDeadLetterSink

    async with IngestPipeline(
        HttpBatchSender("https://ingest.example.com/v1/rows"),
        FileDeadLetterSink(".dlq/records.ndjson"),
        batch_size=500,
    ) as pipeline:
        await pipeline.add({"id": 1, "event": "click"})
"""

from .buffer import IngestBuffer
from .dlq import DeadLetterEntry, DeadLetterSink, FileDeadLetterSink, MemoryDeadLetterSink
from .errors import (
    BufferClosedError,
    CircuitOpenError,
    DeadLetterStorageError,
    IngestError,
    InvalidRecordError,
    PipelineFatalError,
    QueueFullError,
    SenderError,
    TransportError,
)
from .http_sender import HttpBatchSender
from .models import Batch, DeliveryReport, FailedBatch, RejectedRecord, SendResult
from .pipeline import IngestPipeline, PipelineHealth, PipelineStats
from .policy import CircuitBreaker, RetryPolicy, default_retry_classifier
from .queue import BatchQueue
from .retry import RetryCoordinator
from .sender import BatchSender
from .settings import IngestSettings, get_settings
from .types import BatchState, FailureReason, FlushReason, Record
from .worker import DeliveryWorker

__version__ = "0.1.0"
__all__ = [
    # models / types
    "Record",
    "Batch",
    "RejectedRecord",
    "SendResult",
    "FailedBatch",
    "DeliveryReport",
    "BatchState",
    "FailureReason",
    "FlushReason",
    # errors
    "IngestError",
    "InvalidRecordError",
    "BufferClosedError",
    "QueueFullError",
    "TransportError",
    "SenderError",
    "CircuitOpenError",
    "DeadLetterStorageError",
    "PipelineFatalError",
    # policies
    "RetryPolicy",
    "default_retry_classifier",
    "CircuitBreaker",
    # runtime
    "IngestBuffer",
    "BatchQueue",
    "RetryCoordinator",
    "DeliveryWorker",
    "IngestPipeline",
    "PipelineHealth",
    "PipelineStats",
    "IngestSettings",
    "get_settings",
    # boundaries
    "BatchSender",
    "HttpBatchSender",
    "DeadLetterSink",
    "FileDeadLetterSink",
    "MemoryDeadLetterSink",
    "DeadLetterEntry",
]
