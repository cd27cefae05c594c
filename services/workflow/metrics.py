"""Prometheus metrics for the invoice workflow.

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest

from services.shared.config import Settings

service_info = Info(
    "invoice_workflow_service",
    "Identity of the running workflow service",
)

invoice_submissions_total = Counter(
    "invoice_submissions_total",
    "Total invoices submitted",
    ["category"],
)

invoice_transitions_total = Counter(
    "invoice_transitions_total",
    "Applied workflow transitions",
    ["action", "to_status"],
)

invoice_transition_rejections_total = Counter(
    "invoice_transition_rejections_total",
    "Status change requests refused by the approval policy or a lost race",
    ["reason"],  # invalid_argument, forbidden, conflict, not_found
)

invoice_extractions_total = Counter(
    "invoice_extractions_total",
    "Extraction runs by outcome",
    ["status"],  # completed, failed, skipped
)

invoice_extraction_duration_seconds = Histogram(
    "invoice_extraction_duration_seconds",
    "Wall time of the extraction gateway call",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

invoice_duplicates_flagged_total = Counter(
    "invoice_duplicates_flagged_total",
    "Invoices flagged as likely duplicates",
)


def record_service_info(settings: Settings) -> None:
    service_info.info(
        {
            "name": settings.service_name,
            "version": settings.service_version,
            "environment": settings.environment,
        }
    )


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
