"""
Unit tests for environment-driven settings.
"""

import pytest
from pydantic import ValidationError

from stream_ingest import IngestSettings, get_settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("INGEST_BATCH_SIZE", raising=False)
    s = IngestSettings(_env_file=None)
    assert s.batch_size == 500
    assert s.max_retries == 5
    assert s.backoff_jitter is False
    assert s.endpoint is None


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("INGEST_BATCH_SIZE", "42")
    monkeypatch.setenv("INGEST_MAX_RETRIES", "7")
    monkeypatch.setenv("INGEST_ENDPOINT", "https://ingest.example.com/rows")
    monkeypatch.setenv("INGEST_BACKOFF_JITTER", "true")

    s = IngestSettings(_env_file=None)
    assert s.batch_size == 42
    assert s.max_retries == 7
    assert s.endpoint == "https://ingest.example.com/rows"
    assert s.backoff_jitter is True


def test_invalid_values_rejected(monkeypatch):
    monkeypatch.setenv("INGEST_BATCH_SIZE", "0")
    with pytest.raises(ValidationError):
        IngestSettings(_env_file=None)


def test_get_settings_cached():
    get_settings.cache_clear()
    assert get_settings() is get_settings()
    get_settings.cache_clear()
