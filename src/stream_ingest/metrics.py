"""
Prometheus metrics for the ingestion pipeline.

All series carry a ``pipeline`` label so several pipelines can share the
global REGISTRY. Expose them with ``prometheus_client.start_http_server``.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Buffer ---

RECORDS_ADDED_TOTAL = Counter(
    "ingest_records_added_total",
    "Records accepted into the ingest buffer",
    ["pipeline"],
)

BATCHES_FLUSHED_TOTAL = Counter(
    "ingest_batches_flushed_total",
    "Batches flushed from the ingest buffer",
    ["pipeline", "reason"],
)

BUFFERED_RECORDS = Gauge(
    "ingest_buffered_records",
    "Records currently waiting in the ingest buffer",
    ["pipeline"],
)

# --- Delivery ---

SEND_ATTEMPTS_TOTAL = Counter(
    "ingest_send_attempts_total",
    "Batch send attempts by outcome",
    ["pipeline", "outcome"],  # success | partial | transport_error | sender_error
)

SEND_RETRIES_TOTAL = Counter(
    "ingest_send_retries_total",
    "Retries scheduled after transport failures",
    ["pipeline"],
)

SEND_LATENCY = Histogram(
    "ingest_send_latency_seconds",
    "Latency of a single send_batch call",
    ["pipeline"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)

RECORDS_ACCEPTED_TOTAL = Counter(
    "ingest_records_accepted_total",
    "Records accepted by the ingestion service",
    ["pipeline"],
)

RECORDS_DEAD_LETTERED_TOTAL = Counter(
    "ingest_records_dead_lettered_total",
    "Records routed to the dead-letter sink",
    ["pipeline", "reason"],
)

# --- Pipeline ---

QUEUED_BATCHES = Gauge(
    "ingest_queued_batches",
    "Flushed batches waiting for a delivery worker",
    ["pipeline"],
)

WORKERS_ALIVE = Gauge(
    "ingest_workers_alive",
    "Delivery worker tasks currently running",
    ["pipeline"],
)

CIRCUIT_STATE = Gauge(
    "ingest_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["pipeline"],
)

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}
