"""Unit tests for duplicate invoice detection."""

from decimal import Decimal
from unittest.mock import patch

from prometheus_client import REGISTRY

from services.workflow.duplicates import find_duplicate
from services.workflow.repository import unit_of_work
from services.workflow.schema import ExtractionStatus, InvoiceStatus, UserRole
from tests.fakes import PDF_BYTES


def load(engine, invoice_id: str):
    return engine.get_invoice(invoice_id, "ops", UserRole.ACCOUNTS)


class TestNumberAndVendorMatch:
    def test_same_number_and_vendor_is_flagged(self, engine, employee, submit_extracted) -> None:
        original = submit_extracted(
            employee, vendor_name="Acme", invoice_number="INV-1", grand_total=Decimal("100")
        )
        duplicate = submit_extracted(
            employee, vendor_name="Acme", invoice_number="INV-1", grand_total=Decimal("999")
        )

        flagged = load(engine, duplicate)
        assert flagged.is_duplicate is True
        assert flagged.duplicate_of == original

    def test_earlier_invoice_is_not_touched(self, engine, employee, submit_extracted) -> None:
        original = submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")
        submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")

        earlier = load(engine, original)
        assert earlier.is_duplicate is False
        assert earlier.duplicate_of is None

    def test_same_number_other_vendor_is_not_flagged(
        self, engine, employee, submit_extracted
    ) -> None:
        submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")
        other = submit_extracted(employee, vendor_name="Globex", invoice_number="INV-1")

        assert load(engine, other).is_duplicate is False

    def test_first_submitted_match_wins(self, engine, employee, submit_extracted) -> None:
        first = submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")
        submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")
        third = submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")

        assert load(engine, third).duplicate_of == first


class TestVendorAndTotalMatch:
    """Test the fallback for invoices without a matching number."""

    def test_same_vendor_total_and_date(self, engine, employee, submit_extracted) -> None:
        original = submit_extracted(
            employee, vendor_name="Cafe", grand_total=Decimal("42.50"), invoice_date="2026-10-01"
        )
        rescanned = submit_extracted(
            employee, vendor_name="Cafe", grand_total=Decimal("42.50"), invoice_date="2026-10-01"
        )

        assert load(engine, rescanned).duplicate_of == original

    def test_same_vendor_and_total_without_date(
        self, engine, employee, submit_extracted
    ) -> None:
        original = submit_extracted(employee, vendor_name="Cafe", grand_total=Decimal("42.50"))
        receipt = submit_extracted(employee, vendor_name="Cafe", grand_total=Decimal("42.50"))

        assert load(engine, receipt).duplicate_of == original

    def test_different_date_is_not_flagged(self, engine, employee, submit_extracted) -> None:
        submit_extracted(
            employee, vendor_name="Cafe", grand_total=Decimal("42.50"), invoice_date="2026-10-01"
        )
        next_visit = submit_extracted(
            employee, vendor_name="Cafe", grand_total=Decimal("42.50"), invoice_date="2026-10-08"
        )

        assert load(engine, next_visit).is_duplicate is False

    def test_different_total_is_not_flagged(self, engine, employee, submit_extracted) -> None:
        submit_extracted(employee, vendor_name="Cafe", grand_total=Decimal("42.50"))
        other = submit_extracted(employee, vendor_name="Cafe", grand_total=Decimal("17.00"))

        assert load(engine, other).is_duplicate is False


class TestDetectionScope:
    def test_no_extracted_data(self, engine, db, employee) -> None:
        invoice = engine.submit_document(employee.id, "VENDOR_PAYMENT", PDF_BYTES, "a.pdf")

        with unit_of_work(db) as repo:
            assert find_duplicate(repo, invoice.id) is None

    def test_empty_extraction_is_not_checked(self, engine, employee, submit_extracted) -> None:
        submit_extracted(employee)
        second = submit_extracted(employee)

        assert load(engine, second).is_duplicate is False

    def test_duplicate_is_still_approvable(
        self, engine, employee, accountant, submit_extracted
    ) -> None:
        submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")
        duplicate = submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")

        invoice = engine.change_status(duplicate, accountant.id, UserRole.ACCOUNTS, "APPROVED")

        assert invoice.status == InvoiceStatus.APPROVED
        assert invoice.is_duplicate is True

    def test_detection_error_does_not_fail_extraction(
        self, engine, employee, submit_extracted
    ) -> None:
        with patch(
            "services.workflow.engine.detect_duplicate", side_effect=RuntimeError("db hiccup")
        ):
            invoice_id = submit_extracted(employee, vendor_name="Acme", invoice_number="INV-1")

        invoice = load(engine, invoice_id)
        assert invoice.extraction_status == ExtractionStatus.COMPLETED
        assert invoice.is_duplicate is False

    def test_flagged_duplicates_are_counted(self, engine, employee, submit_extracted) -> None:
        before = REGISTRY.get_sample_value("invoice_duplicates_flagged_total") or 0

        submit_extracted(employee, vendor_name="Acme", invoice_number="INV-9")
        submit_extracted(employee, vendor_name="Acme", invoice_number="INV-9")

        assert REGISTRY.get_sample_value("invoice_duplicates_flagged_total") == before + 1
