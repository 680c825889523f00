"""
Unit tests for HttpBatchSender (httpx MockTransport, no network).
"""

import json

import httpx
import pytest

from stream_ingest import Batch, HttpBatchSender, SenderError, TransportError

ENDPOINT = "http://ingest.test/v1/rows"


def make_sender(handler, **kw) -> HttpBatchSender:
    return HttpBatchSender(ENDPOINT, transport=httpx.MockTransport(handler), **kw)


def _batch(n: int = 3) -> Batch:
    return Batch.of({"i": i} for i in range(n))


@pytest.mark.asyncio
async def test_success_empty_body_accepts_all(sample_record):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    batch = Batch.of([sample_record, {"i": 2}])
    async with make_sender(handler, auth_token="tok") as sender:
        result = await sender.send_batch(batch)

    assert result.accepted_count == 2
    assert result.rejected == ()
    assert captured["url"] == ENDPOINT
    assert captured["auth"] == "Bearer tok"
    assert captured["body"]["batch_id"] == batch.batch_id
    rows = captured["body"]["rows"]
    assert rows[0]["ts"].startswith("2024-01-01T00:00:00")
    assert rows[0]["tags"]["levels"] == [1, 2, 3]
    assert rows[1] == {"i": 2}


@pytest.mark.asyncio
async def test_partial_rejection_parsed():
    def handler(request):
        return httpx.Response(
            200, json={"accepted": 2, "rejected": [{"index": 1, "error": "bad type"}]}
        )

    async with make_sender(handler) as sender:
        result = await sender.send_batch(_batch())

    assert result.accepted_count == 2
    assert [(r.index, r.reason) for r in result.rejected] == [(1, "bad type")]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [408, 429, 500, 503])
async def test_retryable_status_raises_transport_error(status):
    async with make_sender(lambda request: httpx.Response(status, text="try later")) as sender:
        with pytest.raises(TransportError):
            await sender.send_batch(_batch())


@pytest.mark.asyncio
async def test_network_error_raises_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with make_sender(handler) as sender:
        with pytest.raises(TransportError):
            await sender.send_batch(_batch())


@pytest.mark.asyncio
async def test_timeout_raises_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    async with make_sender(handler) as sender:
        with pytest.raises(TransportError, match="timeout"):
            await sender.send_batch(_batch())


@pytest.mark.asyncio
async def test_bad_request_without_detail_rejects_every_row():
    async with make_sender(lambda request: httpx.Response(400, text="malformed rows")) as sender:
        result = await sender.send_batch(_batch(3))

    assert result.accepted_count == 0
    assert [r.index for r in result.rejected] == [0, 1, 2]
    assert all("malformed rows" in r.reason for r in result.rejected)


@pytest.mark.asyncio
async def test_unprocessable_with_detail_uses_per_row_rejects():
    def handler(request):
        return httpx.Response(422, json={"rejected": [{"index": 2, "error": "missing ts"}]})

    async with make_sender(handler) as sender:
        result = await sender.send_batch(_batch(3))

    assert result.accepted_count == 2
    assert [r.index for r in result.rejected] == [2]


@pytest.mark.asyncio
async def test_auth_failure_is_not_retryable():
    async with make_sender(lambda request: httpx.Response(401, text="unauthorized")) as sender:
        with pytest.raises(SenderError):
            await sender.send_batch(_batch())


@pytest.mark.asyncio
async def test_out_of_range_reject_index_is_sender_error():
    def handler(request):
        return httpx.Response(200, json={"rejected": [{"index": 9, "error": "?"}]})

    async with make_sender(handler) as sender:
        with pytest.raises(SenderError):
            await sender.send_batch(_batch(3))


@pytest.mark.asyncio
async def test_start_close_idempotent():
    sender = make_sender(lambda request: httpx.Response(200))
    await sender.start()
    await sender.start()
    assert sender._client is not None
    await sender.close()
    await sender.close()
    assert sender._client is None
