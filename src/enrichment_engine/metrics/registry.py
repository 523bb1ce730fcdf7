"""
Prometheus metrics for the enrichment engine, registered in the global REGISTRY.
Expose them with ``prometheus_client.start_http_server`` if needed.
"""

from prometheus_client import Counter, Gauge, Histogram


# --- Records ---

RECORDS_TOTAL = Counter(
    "enrich_records_total",
    "Records handled by the engine, by final outcome",
    ["outcome"],  # success | not_found | error | skipped
)

RECORD_RETRIES_TOTAL = Counter(
    "enrich_record_retries_total",
    "Retries scheduled by the backoff policy",
    ["error_kind"],
)

# --- Provider calls ---

PROVIDER_CALLS_TOTAL = Counter(
    "enrich_provider_calls_total",
    "Provider calls by credential outcome",
    ["outcome"],
)

PROVIDER_CALL_LATENCY_MS = Histogram(
    "enrich_provider_call_latency_ms",
    "Provider call latency in milliseconds",
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

IN_FLIGHT = Gauge(
    "enrich_provider_in_flight",
    "Provider calls currently admitted by the governor",
)

# --- Credentials ---

CREDENTIALS = Gauge(
    "enrich_credentials",
    "Credentials per health state",
    ["state"],  # active | cooling | banned
)

# --- Sink ---

SINK_WRITES_TOTAL = Counter(
    "enrich_sink_writes_total",
    "Result rows appended to the sink",
    ["status"],  # success | failure
)

SINK_WRITE_LATENCY = Histogram(
    "enrich_sink_write_latency_seconds",
    "Latency of one durable row append",
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
)


class MetricsRegistry:
    """Centralized access to the engine's Prometheus metrics."""

    records_total = RECORDS_TOTAL
    record_retries_total = RECORD_RETRIES_TOTAL
    provider_calls_total = PROVIDER_CALLS_TOTAL
    provider_call_latency_ms = PROVIDER_CALL_LATENCY_MS
    in_flight = IN_FLIGHT
    credentials = CREDENTIALS
    sink_writes_total = SINK_WRITES_TOTAL
    sink_write_latency = SINK_WRITE_LATENCY


# Singleton instance
metrics_registry = MetricsRegistry()
