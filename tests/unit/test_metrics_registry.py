"""
Unit tests for Prometheus metrics recording.
"""

from prometheus_client import REGISTRY

from enrichment_engine.coordinator import EnrichmentResult, Record, RunMetrics
from enrichment_engine.metrics import metrics_registry


def _value(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_registry_exposes_engine_metrics():
    assert metrics_registry.records_total is not None
    assert metrics_registry.provider_call_latency_ms is not None
    assert metrics_registry.credentials is not None


def test_run_metrics_mirror_to_prometheus():
    before_ok = _value("enrich_records_total", outcome="success")
    before_skip = _value("enrich_records_total", outcome="skipped")
    before_retry = _value("enrich_record_retries_total", error_kind="rate_limited")

    m = RunMetrics()
    m.record_result(EnrichmentResult.success(Record("a")))
    m.record_skipped(2)
    m.record_retry("rate_limited")

    assert _value("enrich_records_total", outcome="success") == before_ok + 1
    assert _value("enrich_records_total", outcome="skipped") == before_skip + 2
    assert _value("enrich_record_retries_total", error_kind="rate_limited") == before_retry + 1
