"""Observability package for docsync."""

from .logging import setup_logging, log_context, JSONFormatter, ColoredFormatter
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_watch_cycle,
    record_reindex_metrics,
    PrometheusMiddleware,
    docsync_registry
)

__all__ = [
    'setup_logging',
    'log_context',
    'JSONFormatter',
    'ColoredFormatter',
    'setup_prometheus_metrics',
    'record_watch_cycle',
    'record_reindex_metrics',
    'PrometheusMiddleware',
    'docsync_registry'
]
