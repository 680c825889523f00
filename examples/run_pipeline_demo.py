"""
Demo for IngestPipeline.

Shows:
- Prometheus metrics (exposed on :8000/metrics)
- retries with exponential backoff against a flaky sender
- validation rejects and transport exhaustion going to a file DLQ
- environment-based settings
- health monitoring
"""

import asyncio
import random
from datetime import datetime, timezone

from loguru import logger
from prometheus_client import start_http_server

from stream_ingest import (
    Batch,
    BatchSender,
    FileDeadLetterSink,
    IngestPipeline,
    IngestSettings,
    RejectedRecord,
    SendResult,
)


class FlakySender(BatchSender):
    """Times out now and then and rejects records with a negative reading."""

    def __init__(self, timeout_rate: float = 0.2):
        self.timeout_rate = timeout_rate

    async def send_batch(self, batch: Batch) -> SendResult:
        await asyncio.sleep(0.005)  # simulate I/O
        if random.random() < self.timeout_rate:
            raise TimeoutError("simulated ingest timeout")
        rejected = tuple(
            RejectedRecord(index=i, reason="reading must be >= 0")
            for i, r in enumerate(batch.records)
            if r["reading"] < 0
        )
        return SendResult(accepted_count=len(batch) - len(rejected), rejected=rejected)


async def on_bp_high():
    logger.warning("Backpressure HIGH (batch queue full)")


async def on_bp_low():
    logger.info("Backpressure recovered")


async def main():
    start_http_server(8000)
    logger.info("Prometheus metrics available at http://localhost:8000/metrics")

    cfg = IngestSettings(pipeline_id="demo", batch_size=50, backoff_base_ms=20, max_retries=3)
    logger.info(f"Loaded settings: batch_size={cfg.batch_size}, workers={cfg.workers}")

    dlq = FileDeadLetterSink(".dlq/demo.ndjson")
    pipeline = IngestPipeline.from_settings(
        cfg,
        FlakySender(),
        dlq,
        on_backpressure_high=on_bp_high,
        on_backpressure_low=on_bp_low,
    )

    async with pipeline:
        for i in range(2_000):
            await pipeline.add(
                {
                    "device_id": f"sensor-{i % 17}",
                    "reading": random.gauss(20, 15),
                    "ts": datetime.now(timezone.utc),
                }
            )
            if i % 500 == 0:
                h = pipeline.health()
                logger.info(
                    f"Progress: {i}/2000 | buffered={h.buffered_records} "
                    f"queued={h.queued_batches} inflight={h.inflight}"
                )

    s = pipeline.stats
    logger.info(
        f"Done: accepted={s.records_accepted} dead_lettered={s.records_dead_lettered} "
        f"by_reason={s.dead_lettered_by_reason} retries={s.retries}"
    )
    for entry in await dlq.replay(3):
        logger.info(f"DLQ sample: reason={entry.reason.value} records={len(entry.records)}")


if __name__ == "__main__":
    asyncio.run(main())
