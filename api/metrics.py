"""
Prometheus metrics for the vodpack API and transcode pipeline.

Metrics are exposed at the /metrics endpoint in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("vodpack", "vodpack application information")

# =============================================================================
# Upload Metrics
# =============================================================================

UPLOADS_TOTAL = Counter(
    "vodpack_uploads_total",
    "Total upload requests by outcome",
    ["result"],  # success, rejected, failed, fallback
)

UPLOAD_BYTES_TOTAL = Counter(
    "vodpack_upload_bytes_total",
    "Total bytes received for accepted uploads",
)

# =============================================================================
# Transcoding Metrics
# =============================================================================

TRANSCODE_JOBS_TOTAL = Counter(
    "vodpack_transcode_jobs_total",
    "Total rendition jobs by terminal status",
    ["status"],  # succeeded, failed, timed_out, cancelled
)

TRANSCODE_JOBS_ACTIVE = Gauge(
    "vodpack_transcode_jobs_active",
    "Number of rendition encoder processes currently running",
)

TRANSCODE_JOB_DURATION_SECONDS = Histogram(
    "vodpack_transcode_job_duration_seconds",
    "Rendition job duration in seconds",
    ["rendition"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600],
)

PROBE_FAILURES_TOTAL = Counter(
    "vodpack_probe_failures_total",
    "Duration probes that failed and fell back to 0",
)

# =============================================================================
# Storage / Catalog Metrics
# =============================================================================

CLEANUP_ERRORS_TOTAL = Counter(
    "vodpack_cleanup_errors_total",
    "Artifacts that cleanup failed to remove",
    ["target"],  # temp_file, asset_dir
)

CATALOG_RETRIES_TOTAL = Counter(
    "vodpack_catalog_retries_total",
    "Catalog database operations retried due to transient errors",
    ["operation"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "vodpack"})
