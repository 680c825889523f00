"""
Pytest configuration and fixtures for stream-ingest.

Provides cross-platform event loop configuration and shared sample records.
"""

import asyncio
import sys
from datetime import datetime, timezone

import pytest

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest.fixture
def sample_record():
    """One record with string, number, timestamp and nested JSON values."""
    return {
        "device_id": "sensor-17",
        "reading": 21.5,
        "ts": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "tags": {"site": "north", "levels": [1, 2, 3]},
    }


@pytest.fixture
def make_records():
    """Factory for numbered records."""

    def _make(n: int, **extra):
        return [{"i": i, **extra} for i in range(n)]

    return _make
