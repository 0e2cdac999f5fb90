"""
Prometheus metrics for the checkout service.

/metrics is unauthenticated; keep it reachable from the monitoring network only.
Under Gunicorn set PROMETHEUS_MULTIPROC_DIR so every worker's samples are
aggregated at scrape time.
"""
import os
import time

from flask import Blueprint, Response, request, g
from prometheus_client import (
    Counter, Histogram, Gauge, CollectorRegistry, REGISTRY, CONTENT_TYPE_LATEST,
    generate_latest, multiprocess
)

metrics_bp = Blueprint('metrics', __name__)

MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

if MULTIPROCESS_MODE:
    # Metrics are written to files; a fresh registry collects them per scrape
    _scrape_registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(_scrape_registry)
    _metric_registry = None
else:
    _scrape_registry = REGISTRY
    _metric_registry = REGISTRY


# HTTP

http_requests_total = Counter(
    'pos_http_requests_total',
    'HTTP requests by endpoint and status',
    ['method', 'endpoint', 'http_status'],
    registry=_metric_registry
)

http_request_duration_seconds = Histogram(
    'pos_http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['method', 'endpoint'],
    registry=_metric_registry,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

http_requests_in_flight = Gauge(
    'pos_http_requests_in_flight',
    'HTTP requests being served',
    registry=_metric_registry,
    multiprocess_mode='livesum'
)

# Checkout

checkouts_total = Counter(
    'pos_checkouts_total',
    'Checkout attempts by outcome (committed, duplicate or an error code)',
    ['outcome'],
    registry=_metric_registry
)

checkout_duration_seconds = Histogram(
    'pos_checkout_duration_seconds',
    'Time from checkout call to result, including retries',
    registry=_metric_registry,
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

stock_conflicts_total = Counter(
    'pos_stock_conflicts_total',
    'Stock decrements that lost a concurrent update and were retried',
    registry=_metric_registry
)


def setup_metrics_instrumentation(app):
    """Time every request and count it by endpoint and status."""

    @app.before_request
    def _start_request_timer():
        g._metrics_started = time.perf_counter()
        http_requests_in_flight.inc()

    @app.after_request
    def _record_request(response):
        started = g.pop('_metrics_started', None)
        if started is None:
            return response
        http_requests_in_flight.dec()

        endpoint = request.endpoint or 'unknown'
        try:
            http_request_duration_seconds.labels(request.method, endpoint).observe(time.perf_counter() - started)
            http_requests_total.labels(request.method, endpoint, response.status_code).inc()
        except Exception as e:
            # Metrics must never break a checkout response
            app.logger.warning(f"Failed to record metrics: {e}")
        return response


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus scrape endpoint."""
    return Response(generate_latest(_scrape_registry), mimetype=CONTENT_TYPE_LATEST)
