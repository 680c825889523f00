"""
Exceptions for the streaming ingestion client.

Retryable and non-retryable failures are separate types so the retry
coordinator can classify them without string matching.
"""


class IngestError(Exception):
    """Base error for stream_ingest."""

    pass


class InvalidRecordError(IngestError, TypeError):
    """Record is not a mapping of string field names to values."""

    pass


class BufferClosedError(IngestError):
    """add() called on a closed IngestBuffer."""

    pass


class QueueFullError(IngestError):
    """BatchQueue is at capacity and overflow strategy is 'error'."""

    pass


class TransportError(IngestError):
    """Network/timeout/throttling failure talking to the ingestion service (retryable)."""

    pass


class SenderError(IngestError):
    """Non-retryable failure reported by the sender (auth, not found, bad config)."""

    pass


class CircuitOpenError(IngestError):
    """Circuit breaker is open; call rejected without reaching the sender."""

    pass


class DeadLetterStorageError(IngestError):
    """Dead-letter sink could not persist a failed batch. Fatal."""

    pass


class PipelineFatalError(IngestError):
    """Pipeline stopped accepting records after a fatal worker failure."""

    pass
