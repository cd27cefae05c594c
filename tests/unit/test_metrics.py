"""Unit tests for workflow metrics exposition."""

from decimal import Decimal

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY

from services.workflow.metrics import get_metrics, record_service_info


def test_get_metrics_exposes_workflow_series(employee, submit_extracted) -> None:
    submit_extracted(employee, grand_total=Decimal("10"))

    body, content_type = get_metrics()

    assert content_type == CONTENT_TYPE_LATEST
    assert b"invoice_submissions_total" in body
    assert b"invoice_extractions_total" in body
    assert b"invoice_extraction_duration_seconds_bucket" in body


def test_record_service_info(settings) -> None:
    record_service_info(settings.model_copy(update={"environment": "staging"}))

    labels = {"name": "invoice-approval-workflow", "version": "0.1.0", "environment": "staging"}
    assert REGISTRY.get_sample_value("invoice_workflow_service_info", labels) == 1.0
