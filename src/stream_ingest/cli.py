from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import typer
from loguru import logger

from .dlq import FileDeadLetterSink
from .http_sender import HttpBatchSender
from .pipeline import IngestPipeline
from .settings import IngestSettings, get_settings
from .types import FailureReason
from .utils import iter_ndjson

app = typer.Typer(help="stream-ingest operational CLI")

# ---------------------------
# Common options
# ---------------------------


def endpoint_opt() -> Optional[str]:
    return typer.Option(None, "--endpoint", envvar="INGEST_ENDPOINT", help="Ingestion endpoint URL")


def batch_size_opt() -> Optional[int]:
    return typer.Option(None, "--batch-size", help="Flush when this many records are buffered")


def max_retries_opt() -> Optional[int]:
    return typer.Option(None, "--max-retries", help="Retries per batch on transport errors")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", envvar="INGEST_LOG_LEVEL"),
):
    """Configure logging for every command."""
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


def _resolve(settings: IngestSettings, endpoint: Optional[str], **overrides) -> IngestSettings:
    updates = {k: v for k, v in overrides.items() if v is not None}
    if endpoint:
        updates["endpoint"] = endpoint
    settings = settings.model_copy(update=updates)
    if not settings.endpoint:
        raise typer.BadParameter("an endpoint is required (--endpoint or INGEST_ENDPOINT)")
    return settings


async def _run(settings: IngestSettings, records, dlq_path: str) -> dict:
    sender = HttpBatchSender(
        settings.endpoint, timeout=settings.request_timeout, auth_token=settings.auth_token
    )
    pipeline = IngestPipeline.from_settings(settings, sender, FileDeadLetterSink(dlq_path))
    n = 0
    async with pipeline:
        for obj in records:
            await pipeline.add(obj)
            n += 1
    s = pipeline.stats
    return {
        "ingested": n,
        "accepted": s.records_accepted,
        "dead_lettered": s.records_dead_lettered,
        "dead_lettered_by_reason": s.dead_lettered_by_reason,
        "retries": s.retries,
        "dlq_path": dlq_path,
    }


# ---------------------------
# Ingest
# ---------------------------


@app.command("ingest")
def ingest(
    path: str = typer.Argument(..., help="NDJSON file path or '-' for stdin (.gz ok)"),
    endpoint: Optional[str] = endpoint_opt(),
    batch_size: Optional[int] = batch_size_opt(),
    max_retries: Optional[int] = max_retries_opt(),
    dlq_path: Optional[str] = typer.Option(None, "--dlq-path", help="Dead-letter NDJSON file"),
):
    """Stream records from an NDJSON file into the ingestion endpoint."""
    settings = _resolve(get_settings(), endpoint, batch_size=batch_size, max_retries=max_retries)
    summary = asyncio.run(_run(settings, iter_ndjson(path), dlq_path or settings.dlq_path))
    typer.echo(json.dumps(summary, indent=2))


# ---------------------------
# Dead-letter tooling
# ---------------------------


@app.command("dlq-show")
def dlq_show(
    path: str = typer.Argument(..., help="Dead-letter NDJSON file"),
    limit: int = typer.Option(100, "--limit", help="Max entries to print"),
):
    """Print dead-letter entries as NDJSON."""
    entries = asyncio.run(FileDeadLetterSink(path, mkdirs=False).replay(limit))
    for e in entries:
        typer.echo(e.model_dump_json())


@app.command("dlq-replay")
def dlq_replay(
    path: str = typer.Argument(..., help="Dead-letter NDJSON file to replay"),
    endpoint: Optional[str] = endpoint_opt(),
    dlq_out: str = typer.Option(..., "--dlq-out", help="Where failures of the replay go"),
    include_rejected: bool = typer.Option(
        False, "--include-rejected", help="Also resend records the service rejected"
    ),
    batch_size: Optional[int] = batch_size_opt(),
    max_retries: Optional[int] = max_retries_opt(),
):
    """Re-ingest dead-lettered records."""
    if dlq_out == path:
        raise typer.BadParameter("--dlq-out must differ from the file being replayed")
    settings = _resolve(get_settings(), endpoint, batch_size=batch_size, max_retries=max_retries)

    reasons = {FailureReason.TRANSPORT_EXHAUSTED, FailureReason.SHUTDOWN}
    if include_rejected:
        reasons.add(FailureReason.VALIDATION)

    entries = asyncio.run(FileDeadLetterSink(path, mkdirs=False).replay(None))
    records = [r for e in entries if e.reason in reasons for r in e.records]
    logger.info(f"Replaying {len(records)} record(s) from {len(entries)} dead-letter entries")

    summary = asyncio.run(_run(settings, records, dlq_out))
    typer.echo(json.dumps(summary, indent=2))


if __name__ == "__main__":
    app()
