"""
HTTP batch sender.

Posts each batch as JSON to a REST ingestion endpoint:

    POST <endpoint>
    {"batch_id": "...", "rows": [{...}, {...}]}

and expects ``{"accepted": <int>, "rejected": [{"index": <int>, "error": "..."}]}``
back. An empty 2xx body means every row was accepted.

Status mapping:
    2xx             -> SendResult
    400/422         -> per-row rejects from the body, else every row rejected
    408/429/5xx     -> TransportError (retryable)
    other 4xx       -> SenderError (not retryable)
    network/timeout -> TransportError (retryable)
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger

from .errors import SenderError, TransportError
from .models import Batch, RejectedRecord, SendResult
from .sender import BatchSender
from .utils import to_jsonable

RETRYABLE_STATUS = {408, 429}
VALIDATION_STATUS = {400, 422}


class HttpBatchSender(BatchSender):
    """BatchSender backed by an httpx.AsyncClient.

    Example:
        async with HttpBatchSender("https://ingest.example.com/v1/rows", auth_token=tok) as s:
            result = await s.send_batch(batch)
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 10.0,
        auth_token: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=self.timeout, headers=self._headers, transport=self._transport
        )
        logger.debug(f"HttpBatchSender started (endpoint={self.endpoint})")

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.debug("HttpBatchSender closed")

    async def send_batch(self, batch: Batch) -> SendResult:
        if self._client is None:
            await self.start()
        assert self._client is not None

        payload = {
            "batch_id": batch.batch_id,
            "rows": [to_jsonable(r) for r in batch.records],
        }
        try:
            resp = await self._client.post(self.endpoint, json=payload)
        except httpx.TimeoutException as exc:
            raise TransportError(f"timeout posting batch {batch.batch_id}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"connection error posting batch {batch.batch_id}: {exc}") from exc

        status = resp.status_code
        if 200 <= status < 300:
            return self._parse_result(batch, _json_or_none(resp))

        if status in RETRYABLE_STATUS or status >= 500:
            raise TransportError(f"HTTP {status}: {resp.text[:200]}")

        if status in VALIDATION_STATUS:
            body = _json_or_none(resp)
            if isinstance(body, dict) and body.get("rejected"):
                return self._parse_result(batch, body)
            reason = f"HTTP {status}: {resp.text[:200]}"
            return SendResult(
                accepted_count=0,
                rejected=tuple(RejectedRecord(index=i, reason=reason) for i in range(len(batch))),
            )

        raise SenderError(f"HTTP {status}: {resp.text[:200]}")

    @staticmethod
    def _parse_result(batch: Batch, body: Any) -> SendResult:
        if not body:
            return SendResult.all_accepted(batch)
        if not isinstance(body, dict):
            raise SenderError(f"unexpected response body type: {type(body).__name__}")

        rejected = []
        for item in body.get("rejected") or []:
            idx = int(item["index"])
            if not 0 <= idx < len(batch):
                raise SenderError(f"rejected index {idx} outside batch of {len(batch)}")
            rejected.append(RejectedRecord(index=idx, reason=str(item.get("error", "rejected"))))

        accepted = body.get("accepted")
        if accepted is None:
            accepted = len(batch) - len(rejected)
        return SendResult(accepted_count=int(accepted), rejected=tuple(rejected))


def _json_or_none(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return None
