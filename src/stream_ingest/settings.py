from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IngestSettings(BaseSettings):
    """Environment-driven pipeline settings (prefix ``INGEST_``, optional .env)."""

    model_config = SettingsConfigDict(env_prefix="INGEST_", env_file=".env", case_sensitive=False)

    pipeline_id: str = "default"

    # buffering
    batch_size: int = Field(500, gt=0)
    flush_interval: float = Field(1.0, ge=0)  # seconds; 0 disables interval flushes
    max_pending_batches: int = Field(16, gt=0)
    workers: int = Field(2, gt=0)

    # retry / backoff
    max_retries: int = Field(5, ge=0)
    backoff_base_ms: float = Field(100, ge=0)
    backoff_max_ms: float = Field(10_000, ge=0)
    backoff_jitter: bool = False
    circuit_failure_threshold: int = Field(0, ge=0)  # 0 disables the breaker
    circuit_half_open_after: float = Field(30.0, gt=0)

    # dead letters
    dlq_path: str = ".dlq/records.ndjson"

    # http sender
    endpoint: Optional[str] = None
    auth_token: Optional[str] = None
    request_timeout: float = Field(10.0, gt=0)

    # lifecycle / observability
    drain_timeout: float = Field(30.0, ge=0)
    metrics_poll_sec: float = Field(0.25, ge=0)


@lru_cache()
def get_settings() -> IngestSettings:
    return IngestSettings()
