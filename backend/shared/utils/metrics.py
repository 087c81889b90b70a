"""
Metrics for the import / scrape / reconcile pipeline.
Wraps prometheus_client; counters are process-local and reset on restart.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
SOURCE_REQUESTS = Counter(
    "rp_source_requests_total",
    "Outbound requests to calendar feeds and results pages",
    ["source", "status"],
)
SCRAPE_ROWS = Counter(
    "rp_scrape_rows_total",
    "Scored rows extracted from results pages",
    ["strategy"],
)
SCRAPE_EMPTY_PAGES = Counter(
    "rp_scrape_empty_pages_total",
    "Results pages fetched successfully that yielded zero rows",
)
IMPORT_FIXTURES = Counter(
    "rp_import_fixtures_total",
    "Calendar entries merged into the fixture store",
    ["competition", "outcome"],
)
IMPORT_SKIPPED = Counter(
    "rp_import_skipped_entries_total",
    "Calendar entries skipped during import",
    ["competition", "reason"],
)
RESULTS_ATTACHED = Counter(
    "rp_results_attached_total",
    "Results written to fixtures by the reconciler",
)
RESULTS_UNMATCHED = Counter(
    "rp_results_unmatched_total",
    "Scraped results with no matching stored fixture",
)
PREDICTIONS_SCORED = Counter(
    "rp_predictions_scored_total",
    "Prediction point values (re)computed",
)

# ── Histograms ──────────────────────────────────────────────────────────
SOURCE_LATENCY = Histogram(
    "rp_source_latency_seconds",
    "Outbound request latency in seconds",
    ["source"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
)
RUN_DURATION = Histogram(
    "rp_reconciliation_run_seconds",
    "Wall time of a full reconciliation run",
    buckets=(1, 2, 5, 10, 20, 30, 60, 120),
)

# ── Gauges ──────────────────────────────────────────────────────────────
LAST_RUN_UPDATED = Gauge(
    "rp_last_run_updated_fixtures",
    "Fixtures updated by the most recent reconciliation run",
)
LAST_RUN_ROWS = Gauge(
    "rp_last_run_scraped_rows",
    "Scraped rows across the window of the most recent run",
)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
