"""
Unit tests for circuit breaker.
"""

import asyncio

import pytest

from stream_ingest import CircuitBreaker, CircuitOpenError


@pytest.mark.asyncio
async def test_circuit_breaker_states():
    """closed -> open -> half_open -> closed."""
    cb = CircuitBreaker(failure_threshold=3, half_open_after_sec=0.1)
    assert cb.state == "closed"
    await cb.allow()

    await cb.on_failure()
    await cb.on_failure()
    assert cb.state == "closed"

    await cb.on_failure()
    assert cb.state == "open"
    with pytest.raises(CircuitOpenError):
        await cb.allow()

    await asyncio.sleep(0.15)
    await cb.allow()
    assert cb.state == "half_open"

    await cb.on_success()
    assert cb.state == "closed"


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    cb = CircuitBreaker(failure_threshold=1, half_open_after_sec=0.05)
    await cb.on_failure()
    assert cb.state == "open"

    await asyncio.sleep(0.08)
    await cb.allow()
    assert cb.state == "half_open"

    await cb.on_failure()
    assert cb.state == "open"
    with pytest.raises(CircuitOpenError):
        await cb.allow()


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    cb = CircuitBreaker(failure_threshold=2, half_open_after_sec=10)
    await cb.on_failure()
    await cb.on_success()
    await cb.on_failure()
    assert cb.state == "closed"


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        CircuitBreaker(failure_threshold=0)
