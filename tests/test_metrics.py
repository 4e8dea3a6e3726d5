import pytest

from observability.prometheus_metrics import (
    PrometheusMiddleware,
    docsync_registry,
    record_reindex_metrics,
    record_watch_cycle,
)


def _sample(name, **labels):
    value = docsync_registry.get_sample_value(name, labels or None)
    return value or 0.0


def test_record_watch_cycle_updates_counters():
    before_completed = _sample("docsync_watch_cycles_total", status="completed")
    before_scanned = _sample("docsync_watch_files_scanned_total")
    before_errors = _sample("docsync_watch_file_errors_total")

    record_watch_cycle("completed", scanned=4, changed=1, errors=2, duration=0.5)

    assert _sample("docsync_watch_cycles_total", status="completed") == before_completed + 1
    assert _sample("docsync_watch_files_scanned_total") == before_scanned + 4
    assert _sample("docsync_watch_file_errors_total") == before_errors + 2


def test_record_skipped_cycle_counts_no_files():
    before_scanned = _sample("docsync_watch_files_scanned_total")
    before_skipped = _sample("docsync_watch_cycles_total", status="skipped")

    record_watch_cycle("skipped")

    assert _sample("docsync_watch_cycles_total", status="skipped") == before_skipped + 1
    assert _sample("docsync_watch_files_scanned_total") == before_scanned


def test_record_reindex_metrics():
    before_ok = _sample("docsync_reindex_attempts_total", status="ok")
    before_chunks = _sample("docsync_reindex_chunks_count")

    record_reindex_metrics("ok", 0.02, chunk_count=3)
    record_reindex_metrics("error", 0.01)

    assert _sample("docsync_reindex_attempts_total", status="ok") == before_ok + 1
    assert _sample("docsync_reindex_chunks_count") == before_chunks + 1


@pytest.mark.parametrize("path,expected", [
    ("/files/reindex/0123456789abcdef0123456789abcdef", "/files/reindex/{id}"),
    ("/debug/files/0123456789abcdef0123456789abcdef", "/debug/files/{id}"),
    ("/debug/watch/runs", "/debug/watch/runs"),
    ("/items/42", "/items/{id}"),
])
def test_endpoint_normalization(path, expected):
    middleware = PrometheusMiddleware(app=None)
    assert middleware._normalize_endpoint(path) == expected


def test_metrics_endpoint_exposes_http_metrics(client):
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "text/plain" in r.headers["content-type"]
    assert "docsync_http_requests_total" in r.text
    assert 'endpoint="/health"' in r.text
