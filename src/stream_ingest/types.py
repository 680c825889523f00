from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

Record = Mapping[str, Any]
BackpressureCallback = Callable[[], Awaitable[None]]


class BatchState(str, Enum):
    """Lifecycle of a batch inside the retry coordinator."""

    PENDING = "pending"  # flushed, waiting for a worker
    SENDING = "sending"  # sender call in progress
    RETRYING = "retrying"  # sleeping before the next attempt
    DELIVERED = "delivered"  # every record accepted or rejected by the service
    DEAD_LETTERED = "dead_lettered"  # whole batch handed to the dead-letter sink


class FailureReason(str, Enum):
    """Why records ended up in the dead-letter sink."""

    VALIDATION = "validation"
    TRANSPORT_EXHAUSTED = "transport_exhausted"
    SENDER_ERROR = "sender_error"
    SHUTDOWN = "shutdown"


class FlushReason(str, Enum):
    SIZE = "size"
    INTERVAL = "interval"
    MANUAL = "manual"
    CLOSE = "close"
