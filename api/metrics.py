"""
Prometheus metrics for the conversion API and result consumer.

Metrics are exposed at /metrics endpoint in Prometheus text format.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("videocmprs", "videocmprs application information")

# =============================================================================
# Submission Metrics
# =============================================================================

SUBMISSIONS_TOTAL = Counter(
    "videocmprs_submissions_total",
    "Conversion request submissions",
    ["result"],  # accepted, upload_failed, video_failed, publish_failed, create_failed
)

SUBMISSION_DURATION_SECONDS = Histogram(
    "videocmprs_submission_duration_seconds",
    "Time spent handling a submission (upload included)",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)

JOB_PUBLISH_TOTAL = Counter(
    "videocmprs_job_publish_total",
    "Conversion job messages published to the broker",
    ["result"],  # success, failed
)

COMPENSATION_FAILURES_TOTAL = Counter(
    "videocmprs_compensation_failures_total",
    "Compensating status updates that failed themselves",
)

# =============================================================================
# Completion Metrics
# =============================================================================

COMPLETIONS_TOTAL = Counter(
    "videocmprs_completions_total",
    "Worker result messages handled",
    ["outcome"],  # completed, worker_failed, insert_failed, link_failed, incomplete, duplicate, invalid
)

RESULT_MESSAGES_TOTAL = Counter(
    "videocmprs_result_messages_total",
    "Broker actions taken for result messages",
    ["action"],  # acked, dead_lettered, redelivery
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def init_app_info(version: str = "0.1.0", component: str = "api"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "videocmprs", "component": component})
