"""Prometheus metrics integration for the docsync API and watcher."""

from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import FastAPI, Request, Response
import re
import time
from typing import Optional
import logging
import os

logger = logging.getLogger(__name__)

# Create custom registry for docsync metrics
docsync_registry = CollectorRegistry()

# Request metrics
request_count = Counter(
    'docsync_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=docsync_registry
)

request_duration = Histogram(
    'docsync_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=docsync_registry
)

# Watcher metrics
watch_cycles = Counter(
    'docsync_watch_cycles_total',
    'Scan cycles by outcome (completed, skipped, failed)',
    ['status'],
    registry=docsync_registry
)

watch_cycle_duration = Histogram(
    'docsync_watch_cycle_duration_seconds',
    'Scan cycle duration in seconds',
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
    registry=docsync_registry
)

watch_files_scanned = Counter(
    'docsync_watch_files_scanned_total',
    'Tracked files visited by scan cycles',
    registry=docsync_registry
)

watch_files_changed = Counter(
    'docsync_watch_files_changed_total',
    'Tracked files re-chunked by scan cycles',
    registry=docsync_registry
)

watch_file_errors = Counter(
    'docsync_watch_file_errors_total',
    'Per-file errors during scan cycles (missing sources included)',
    registry=docsync_registry
)

# Reindex metrics
reindex_attempts = Counter(
    'docsync_reindex_attempts_total',
    'Reprocessing attempts by outcome',
    ['status'],
    registry=docsync_registry
)

reindex_duration = Histogram(
    'docsync_reindex_duration_seconds',
    'Reprocessing duration in seconds',
    ['status'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=docsync_registry
)

reindex_chunks = Histogram(
    'docsync_reindex_chunks',
    'Chunks written per successful reprocess',
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000],
    registry=docsync_registry
)

app_info = Info(
    'docsync_app',
    'Application information',
    registry=docsync_registry
)


class PrometheusMiddleware:
    """Middleware to collect Prometheus metrics for HTTP requests."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        method = request.method
        endpoint = self._normalize_endpoint(request.url.path)

        start_time = time.time()
        status_code = 500  # Default to error

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            request_count.labels(
                method=method,
                endpoint=endpoint,
                status_code=str(status_code)
            ).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path to reduce cardinality."""
        # Record ids are 32-char hex strings
        path = re.sub(r'/[0-9a-f]{32}(?=/|$)', '/{id}', path)
        path = re.sub(r'/\d+(?=/|$)', '/{id}', path)
        return path


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Setup Prometheus metrics collection for FastAPI app."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(docsync_registry), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development'),
    })

    logger.info("Prometheus metrics configured")


def record_watch_cycle(status: str, scanned: int = 0, changed: int = 0, errors: int = 0,
                       duration: Optional[float] = None) -> None:
    """Record the outcome of one scan cycle."""
    watch_cycles.labels(status=status).inc()
    if scanned:
        watch_files_scanned.inc(scanned)
    if changed:
        watch_files_changed.inc(changed)
    if errors:
        watch_file_errors.inc(errors)
    if duration is not None:
        watch_cycle_duration.observe(duration)


def record_reindex_metrics(status: str, duration: float, chunk_count: Optional[int] = None) -> None:
    """Record one reprocessing attempt."""
    reindex_attempts.labels(status=status).inc()
    reindex_duration.labels(status=status).observe(duration)
    if chunk_count is not None:
        reindex_chunks.observe(chunk_count)

