"""Unit tests for submission and extraction in the lifecycle engine."""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import update

from services.extraction.schema import ExtractedInvoice, ExtractedLineItem
from services.queue.background import ThreadedExtractionQueue
from services.shared.errors import ConflictError, InvalidArgumentError, NotFoundError
from services.workflow.engine import InvoiceWorkflowEngine
from services.workflow.models import Invoice, utcnow
from services.workflow.repository import unit_of_work
from services.workflow.schema import ActionType, ExtractionStatus, InvoiceStatus, UserRole
from tests.fakes import PDF_BYTES, FakeExtractionProvider


def load(engine: InvoiceWorkflowEngine, invoice_id: str):
    return engine.get_invoice(invoice_id, "ops", UserRole.ACCOUNTS)


class TestSubmission:
    """Test invoice creation."""

    def test_submit_creates_pending_invoice(self, engine, employee) -> None:
        invoice = engine.submit_document(
            employee.id, "REIMBURSEMENT", PDF_BYTES, "taxi.pdf", notes="airport"
        )

        assert invoice.status == InvoiceStatus.PENDING_REVIEW
        assert invoice.extraction_status == ExtractionStatus.PENDING
        assert invoice.requires_two_level is False
        assert invoice.is_duplicate is False
        assert invoice.original_filename == "taxi.pdf"
        assert invoice.notes == "airport"
        assert invoice.file_ref.endswith(".pdf")

    def test_submit_stores_document(self, engine, employee, storage) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")

        assert storage.read(invoice.file_ref) == PDF_BYTES

    def test_submit_records_submitted_action(self, engine, employee) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")

        log = engine.get_audit_log(invoice.id, employee.id, UserRole.EMPLOYEE)
        assert [entry.action for entry in log] == [ActionType.SUBMITTED]
        assert log[0].user_id == employee.id

    def test_submit_invalid_category(self, engine, employee) -> None:
        with pytest.raises(InvalidArgumentError, match="Valid category is required"):
            engine.submit_invoice(employee.id, "TRAVEL", "x.pdf")

    def test_submit_requires_file(self, engine, employee) -> None:
        with pytest.raises(InvalidArgumentError):
            engine.submit_invoice(employee.id, "VENDOR_PAYMENT", "")

        with pytest.raises(InvalidArgumentError):
            engine.submit_document(employee.id, "VENDOR_PAYMENT", b"", "empty.pdf")

    def test_submit_unknown_submitter(self, engine) -> None:
        with pytest.raises(NotFoundError, match="Submitter not found"):
            engine.submit_invoice("missing-user", "VENDOR_PAYMENT", "x.pdf")

    def test_submit_without_queue_does_not_extract(self, engine, employee, extractor) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")

        assert extractor.calls == []
        assert load(engine, invoice.id).extraction_status == ExtractionStatus.PENDING


class TestApprovalRoute:
    """Test the status an invoice enters once extraction succeeds."""

    def test_total_at_threshold_goes_to_senior(self, engine, employee, submit_extracted) -> None:
        invoice_id = submit_extracted(employee, grand_total=Decimal("100000"))

        invoice = load(engine, invoice_id)
        assert invoice.extraction_status == ExtractionStatus.COMPLETED
        assert invoice.requires_two_level is True
        assert invoice.status == InvoiceStatus.PENDING_SENIOR_APPROVAL

    def test_total_below_threshold_stays_in_review(
        self, engine, employee, submit_extracted
    ) -> None:
        invoice_id = submit_extracted(employee, grand_total=Decimal("99999.99"))

        invoice = load(engine, invoice_id)
        assert invoice.requires_two_level is False
        assert invoice.status == InvoiceStatus.PENDING_REVIEW

    def test_missing_total_is_single_level(self, engine, employee, submit_extracted) -> None:
        invoice_id = submit_extracted(employee, vendor_name="Acme")

        invoice = load(engine, invoice_id)
        assert invoice.requires_two_level is False
        assert invoice.status == InvoiceStatus.PENDING_REVIEW

    def test_threshold_is_configurable(
        self, db, extractor, storage, settings, employee
    ) -> None:
        low = settings.model_copy(update={"two_level_approval_threshold": Decimal("500")})
        engine = InvoiceWorkflowEngine(db=db, extractor=extractor, storage=storage, settings=low)
        extractor.invoice = ExtractedInvoice(grand_total=Decimal("750"))

        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        engine.run_extraction(invoice.id)

        assert load(engine, invoice.id).status == InvoiceStatus.PENDING_SENIOR_APPROVAL


class TestExtractionData:
    """Test what a successful extraction persists."""

    def test_extracted_fields_and_line_items(self, engine, employee, extractor) -> None:
        extractor.invoice = ExtractedInvoice(
            vendor_name="Acme Corp",
            invoice_number="INV-1",
            invoice_date="2026-09-30",
            grand_total=Decimal("1250.50"),
            line_items=[
                ExtractedLineItem(description="Widgets", quantity=2, unit_price="500", total=1000),
                ExtractedLineItem(description="Shipping", total="250.50"),
            ],
            confidence_scores={"vendorName": 0.95},
        )
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "acme.pdf")

        assert engine.run_extraction(invoice.id) == ExtractionStatus.COMPLETED

        data = load(engine, invoice.id).extracted_data
        assert data is not None
        assert data.vendor_name == "Acme Corp"
        assert data.invoice_number == "INV-1"
        assert data.grand_total == Decimal("1250.50")
        assert [item.description for item in data.line_items] == ["Widgets", "Shipping"]
        assert data.line_items[0].quantity == Decimal("2")
        assert data.confidence_scores == {"vendorName": 0.95}

    def test_gateway_receives_stored_bytes(self, engine, employee, extractor) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        engine.run_extraction(invoice.id)

        assert extractor.calls == [PDF_BYTES]


class TestExtractionFailure:
    """Test that failures only ever surface in extraction_status."""

    def test_gateway_failure_marks_failed(self, engine, employee, extractor) -> None:
        extractor.error = "Malformed extraction response"
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")

        assert engine.run_extraction(invoice.id) == ExtractionStatus.FAILED

        reloaded = load(engine, invoice.id)
        assert reloaded.extraction_status == ExtractionStatus.FAILED
        assert reloaded.status == InvoiceStatus.PENDING_REVIEW
        assert reloaded.extracted_data is None

    def test_gateway_exception_marks_failed(self, engine, employee, extractor) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")

        with patch.object(extractor, "extract_invoice_fields", side_effect=RuntimeError("boom")):
            assert engine.run_extraction(invoice.id) == ExtractionStatus.FAILED

        assert load(engine, invoice.id).extraction_status == ExtractionStatus.FAILED

    def test_missing_document_marks_failed(self, engine, employee, extractor) -> None:
        invoice = engine.submit_invoice(employee.id, "VENDOR_PAYMENT", "not-there.pdf")

        assert engine.run_extraction(invoice.id) == ExtractionStatus.FAILED
        assert extractor.calls == []

    def test_failed_invoice_cannot_be_approved(
        self, engine, employee, accountant, extractor
    ) -> None:
        extractor.error = "timeout"
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        engine.run_extraction(invoice.id)

        with pytest.raises(ConflictError, match="extraction has not completed"):
            engine.change_status(invoice.id, accountant.id, UserRole.ACCOUNTS, "APPROVED")

    def test_unknown_invoice_returns_none(self, engine) -> None:
        assert engine.run_extraction("no-such-invoice") is None


class TestReprocessing:
    """Test manual and bulk re-runs of extraction."""

    def test_reprocess_failed_invoice(self, engine, employee, extractor) -> None:
        extractor.error = "temporary outage"
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        engine.run_extraction(invoice.id)

        extractor.error = None
        extractor.invoice = ExtractedInvoice(vendor_name="Acme", grand_total=Decimal("150000"))

        assert engine.reprocess_extraction(invoice.id) == ExtractionStatus.COMPLETED
        reloaded = load(engine, invoice.id)
        assert reloaded.status == InvoiceStatus.PENDING_SENIOR_APPROVAL
        assert reloaded.extracted_data.vendor_name == "Acme"

    def test_reprocess_completed_invoice_is_noop(
        self, engine, employee, extractor, submit_extracted
    ) -> None:
        invoice_id = submit_extracted(employee, grand_total=Decimal("10"))
        extractor.invoice = ExtractedInvoice(grand_total=Decimal("500000"))

        assert engine.reprocess_extraction(invoice_id) == ExtractionStatus.COMPLETED

        reloaded = load(engine, invoice_id)
        assert len(extractor.calls) == 1
        assert reloaded.requires_two_level is False
        assert reloaded.extracted_data.grand_total == Decimal("10")

    def test_reprocess_unknown_invoice(self, engine) -> None:
        with pytest.raises(NotFoundError):
            engine.reprocess_extraction("missing")

    def test_retry_failed_extractions(self, engine, employee, extractor) -> None:
        extractor.error = "outage"
        first = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "1.pdf")
        second = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "2.pdf")
        pending = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "3.pdf")
        engine.run_extraction(first.id)
        engine.run_extraction(second.id)

        extractor.error = None
        outcomes = engine.retry_failed_extractions()

        assert outcomes == {
            first.id: ExtractionStatus.COMPLETED,
            second.id: ExtractionStatus.COMPLETED,
        }
        assert load(engine, pending.id).extraction_status == ExtractionStatus.PENDING

    def test_rejected_during_extraction_stays_rejected(
        self, engine, employee, accountant, extractor
    ) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        engine.change_status(
            invoice.id, accountant.id, UserRole.ACCOUNTS, "REJECTED", comment="not ours"
        )
        extractor.invoice = ExtractedInvoice(grand_total=Decimal("200000"))

        assert engine.run_extraction(invoice.id) == ExtractionStatus.COMPLETED

        reloaded = load(engine, invoice.id)
        assert reloaded.status == InvoiceStatus.REJECTED
        assert reloaded.requires_two_level is True

    def test_claim_is_exclusive(self, engine, db, employee) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        claimable = (ExtractionStatus.PENDING, ExtractionStatus.FAILED)

        with unit_of_work(db) as repo:
            assert repo.claim_extraction(invoice.id, claimable) is True
        with unit_of_work(db) as repo:
            assert repo.claim_extraction(invoice.id, claimable) is False

        assert engine.run_extraction(invoice.id) == ExtractionStatus.PROCESSING


class TestStalledExtraction:
    """Test recovery of invoices left in PROCESSING by an attempt that never finished."""

    def stall(self, db, invoice_id: str, started_at=None) -> None:
        with unit_of_work(db) as repo:
            assert repo.claim_extraction(invoice_id, (ExtractionStatus.PENDING,)) is True
            if started_at is not None:
                repo.session.execute(
                    update(Invoice)
                    .where(Invoice.id == invoice_id)
                    .values(extraction_started_at=started_at)
                )

    def test_reprocess_takes_over_processing_invoice(
        self, engine, db, employee, extractor
    ) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        self.stall(db, invoice.id)
        extractor.invoice = ExtractedInvoice(vendor_name="Acme", grand_total=Decimal("250000"))

        assert engine.run_extraction(invoice.id) == ExtractionStatus.PROCESSING
        assert engine.reprocess_extraction(invoice.id) == ExtractionStatus.COMPLETED

        reloaded = load(engine, invoice.id)
        assert len(extractor.calls) == 1
        assert reloaded.status == InvoiceStatus.PENDING_SENIOR_APPROVAL
        assert reloaded.extracted_data.vendor_name == "Acme"

    def test_sweep_includes_only_stale_processing(
        self, engine, db, employee, extractor, settings
    ) -> None:
        stale = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "old.pdf")
        fresh = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "new.pdf")
        long_ago = utcnow() - timedelta(seconds=settings.extraction_stale_after_seconds + 60)
        self.stall(db, stale.id, started_at=long_ago)
        self.stall(db, fresh.id)

        assert engine.find_failed_extractions() == [stale.id]
        assert engine.retry_failed_extractions() == {stale.id: ExtractionStatus.COMPLETED}
        assert load(engine, fresh.id).extraction_status == ExtractionStatus.PROCESSING

    def test_late_result_after_takeover_is_discarded(
        self, engine, employee, extractor
    ) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")
        extractor.invoice = ExtractedInvoice(vendor_name="Acme", grand_total=Decimal("10"))
        extract = extractor.extract_invoice_fields
        takeovers: list[ExtractionStatus | None] = []

        def extract_then_take_over(file_bytes: bytes):
            result = extract(file_bytes)
            if not takeovers:
                takeovers.append(None)
                takeovers[0] = engine.reprocess_extraction(invoice.id)
            return result

        with patch.object(extractor, "extract_invoice_fields", extract_then_take_over):
            assert engine.run_extraction(invoice.id) == ExtractionStatus.COMPLETED

        reloaded = load(engine, invoice.id)
        assert takeovers == [ExtractionStatus.COMPLETED]
        assert len(extractor.calls) == 2
        assert reloaded.extracted_data.grand_total == Decimal("10")


class TestBackgroundExtraction:
    """Test extraction scheduled on the in-process queue."""

    def test_submission_schedules_extraction(
        self, db, storage, settings, employee
    ) -> None:
        extractor = FakeExtractionProvider(settings)
        extractor.invoice = ExtractedInvoice(vendor_name="Acme", grand_total=Decimal("42"))
        queue = ThreadedExtractionQueue(max_workers=2)
        engine = InvoiceWorkflowEngine(
            db=db, extractor=extractor, storage=storage, settings=settings, queue=queue
        )

        try:
            invoices = [
                engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, f"{n}.pdf")
                for n in range(3)
            ]
            assert queue.join(timeout=30) is True
        finally:
            queue.shutdown()

        for invoice in invoices:
            assert load(engine, invoice.id).extraction_status == ExtractionStatus.COMPLETED
        assert len(extractor.calls) == 3

    def test_submission_survives_stopped_queue(self, db, storage, settings, employee) -> None:
        queue = ThreadedExtractionQueue(max_workers=1)
        queue.shutdown()
        engine = InvoiceWorkflowEngine(
            db=db,
            extractor=FakeExtractionProvider(settings),
            storage=storage,
            settings=settings,
            queue=queue,
        )

        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")

        assert load(engine, invoice.id).extraction_status == ExtractionStatus.PENDING
