from __future__ import annotations

from abc import ABC, abstractmethod

from .models import Batch, SendResult


class BatchSender(ABC):
    """Boundary to the downstream ingestion service.

    ``send_batch`` returns a SendResult when the service answered (even if it
    rejected some records) and raises when the batch never got a verdict:
    TransportError/TimeoutError/ConnectionError for transient failures,
    SenderError for anything retrying will not fix.
    """

    async def __aenter__(self) -> "BatchSender":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Open connections/clients. Default: nothing to open."""
        return None

    async def close(self) -> None:
        """Release connections/clients. Safe to call multiple times."""
        return None

    @abstractmethod
    async def send_batch(self, batch: Batch) -> SendResult:
        """Deliver one batch and report accepted/rejected records."""
        ...
