"""Invoice lifecycle engine.

Orchestrates an invoice from submission through extraction, duplicate
detection and the approval workflow. Every mutating operation runs in one
transaction that carries its audit entry and notifications; every decision
re-reads the invoice from the store first.

Collaborators are injected:
- db: relational store (services.storage.database.Database)
- extractor: extraction gateway (services.extraction.base.ExtractionProvider)
- storage: where submitted PDFs live (services.storage.service.DocumentStorage)
- queue: background runner for extraction (services.queue.background.ExtractionQueue)
"""

import logging
import time
from collections.abc import Iterable
from datetime import timedelta
from pathlib import PurePath
from typing import Any

from pydantic import ValidationError

from services.extraction.base import ExtractionProvider
from services.extraction.schema import ExtractedInvoice
from services.queue.background import ExtractionQueue
from services.shared.config import Settings
from services.shared.errors import (
    ConflictError,
    ExtractionFailure,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
    WorkflowError,
)
from services.storage.database import Database
from services.storage.service import DocumentStorage
from services.workflow import audit, metrics, policy
from services.workflow.duplicates import detect_duplicate
from services.workflow.models import Invoice, utcnow
from services.workflow.repository import InvoiceRepository, unit_of_work
from services.workflow.schema import (
    ExtractedDataUpdate,
    ExtractedDataView,
    ExtractionStatus,
    InvoiceActionView,
    InvoiceCategory,
    InvoiceDetail,
    InvoiceStatus,
    InvoiceView,
    UpdateCount,
    UserRole,
    UserView,
)

logger = logging.getLogger(__name__)

# Automatic extraction may (re)start only from these states
CLAIMABLE_EXTRACTION_STATES = (ExtractionStatus.PENDING, ExtractionStatus.FAILED)

# An operator may also take over an attempt that never finished
REPROCESSABLE_EXTRACTION_STATES = (*CLAIMABLE_EXTRACTION_STATES, ExtractionStatus.PROCESSING)

_ERROR_REASONS: dict[type[WorkflowError], str] = {
    InvalidArgumentError: "invalid_argument",
    ForbiddenError: "forbidden",
    NotFoundError: "not_found",
    ConflictError: "conflict",
}


def _parse_category(value: InvoiceCategory | str) -> InvoiceCategory:
    try:
        return InvoiceCategory(value)
    except ValueError:
        raise InvalidArgumentError(
            "Valid category is required (VENDOR_PAYMENT or REIMBURSEMENT)"
        ) from None


def _count_rejection(error: WorkflowError) -> None:
    reason = _ERROR_REASONS.get(type(error), "other")
    metrics.invoice_transition_rejections_total.labels(reason=reason).inc()


class InvoiceWorkflowEngine:
    """Lifecycle engine for submitted invoices."""

    def __init__(
        self,
        db: Database,
        extractor: ExtractionProvider,
        storage: DocumentStorage,
        settings: Settings,
        queue: ExtractionQueue | None = None,
    ) -> None:
        self.db = db
        self.extractor = extractor
        self.storage = storage
        self.settings = settings
        self.queue = queue

    # Users

    def register_user(self, username: str, email: str, role: UserRole | str) -> UserView:
        parsed_role = policy.parse_role(role)
        with unit_of_work(self.db) as repo:
            user = repo.add_user(username, email, parsed_role)
            return UserView.model_validate(user)

    # Submission

    def submit_invoice(
        self,
        submitter_id: str,
        category: InvoiceCategory | str,
        file_ref: str,
        notes: str | None = None,
        original_filename: str | None = None,
    ) -> InvoiceView:
        """Create an invoice and schedule its extraction.

        Returns as soon as the invoice row is committed; extraction outcome
        is only ever reflected in the invoice's extraction_status.

        Raises:
            InvalidArgumentError: Unknown category or empty file reference
            NotFoundError: Submitter does not exist
        """
        parsed_category = _parse_category(category)
        if not file_ref:
            raise InvalidArgumentError("A stored PDF file is required")

        with unit_of_work(self.db) as repo:
            if repo.get_user(submitter_id) is None:
                raise NotFoundError("Submitter not found")
            invoice = repo.add_invoice(
                submitted_by=submitter_id,
                category=parsed_category,
                file_ref=file_ref,
                original_filename=original_filename or PurePath(file_ref).name,
                notes=notes or None,
            )
            audit.record_submission(repo, invoice)
            view = InvoiceView.model_validate(invoice)

        metrics.invoice_submissions_total.labels(category=parsed_category.value).inc()
        logger.info(f"Invoice {view.id} submitted by {submitter_id}")
        self._schedule_extraction(view.id)
        return view

    def submit_document(
        self,
        submitter_id: str,
        category: InvoiceCategory | str,
        data: bytes,
        filename: str,
        notes: str | None = None,
    ) -> InvoiceView:
        """Store an uploaded PDF and submit it as an invoice."""
        parsed_category = _parse_category(category)
        if not data:
            raise InvalidArgumentError("At least one PDF file is required")
        file_ref = self.storage.save(data, filename)
        return self.submit_invoice(
            submitter_id, parsed_category, file_ref, notes=notes, original_filename=filename
        )

    def _schedule_extraction(self, invoice_id: str) -> None:
        if self.queue is None:
            logger.debug(f"No extraction queue configured; invoice {invoice_id} left PENDING")
            return
        try:
            self.queue.submit(self.run_extraction, invoice_id)
        except RuntimeError as e:
            # Executor already shut down; operator tooling can reprocess later
            logger.error(f"Could not schedule extraction for invoice {invoice_id}: {e}")

    # Extraction

    def run_extraction(self, invoice_id: str) -> ExtractionStatus | None:
        """Drive one extraction attempt for an invoice. Never raises.

        Claims the invoice (PENDING/FAILED -> PROCESSING), calls the gateway
        outside any transaction, then writes extracted data, line items,
        approval route and COMPLETED in one transaction. Any failure after
        the claim leaves extraction_status FAILED and the workflow status
        untouched.

        Returns:
            Extraction status after the attempt, or None if the invoice is unknown
        """
        return self._run_extraction(invoice_id, CLAIMABLE_EXTRACTION_STATES)

    def reprocess_extraction(self, invoice_id: str) -> ExtractionStatus:
        """Manually re-run extraction for an invoice.

        Also takes over an invoice left in PROCESSING by an attempt that
        never finished. An invoice whose extraction is already COMPLETED is
        left as it is, so its approval route is never rewritten.

        Raises:
            NotFoundError: Invoice does not exist
        """
        with unit_of_work(self.db) as repo:
            if repo.get_invoice(invoice_id) is None:
                raise NotFoundError("Invoice not found")
        status = self._run_extraction(invoice_id, REPROCESSABLE_EXTRACTION_STATES)
        return status if status is not None else ExtractionStatus.FAILED

    def find_failed_extractions(self) -> list[str]:
        """Ids of FAILED or stalled PROCESSING invoices, newest first.

        An invoice counts as stalled once its current attempt started more
        than extraction_stale_after_seconds ago.
        """
        stale_before = utcnow() - timedelta(seconds=self.settings.extraction_stale_after_seconds)
        with unit_of_work(self.db) as repo:
            return repo.list_retryable_extraction_ids(stale_before)

    def retry_failed_extractions(self) -> dict[str, ExtractionStatus]:
        """Reprocess every invoice returned by find_failed_extractions."""
        retryable = self.find_failed_extractions()
        logger.info(f"Found {len(retryable)} failed or stalled invoices")
        outcomes: dict[str, ExtractionStatus] = {}
        for invoice_id in retryable:
            outcomes[invoice_id] = self.reprocess_extraction(invoice_id)
        return outcomes

    def _run_extraction(
        self, invoice_id: str, claimable: tuple[ExtractionStatus, ...]
    ) -> ExtractionStatus | None:
        try:
            with unit_of_work(self.db) as repo:
                claimed = repo.claim_extraction(invoice_id, claimable)
                invoice = repo.get_invoice(invoice_id)
                if invoice is None:
                    logger.warning(f"Extraction requested for unknown invoice {invoice_id}")
                    return None
                if not claimed:
                    logger.info(
                        f"Extraction for invoice {invoice_id} skipped: "
                        f"status is {invoice.extraction_status.value}"
                    )
                    metrics.invoice_extractions_total.labels(status="skipped").inc()
                    return invoice.extraction_status
                file_ref = invoice.file_ref
        except Exception:
            logger.exception(f"Could not claim invoice {invoice_id} for extraction")
            return None

        try:
            result = self._extract(invoice_id, file_ref)
            self._persist_extraction(invoice_id, result)
        except ConflictError as e:
            # Another attempt finished first
            logger.info(f"Extraction result for invoice {invoice_id} discarded: {e}")
            metrics.invoice_extractions_total.labels(status="skipped").inc()
            return self._current_extraction_status(invoice_id)
        except Exception as e:
            logger.warning(f"Extraction failed for invoice {invoice_id}: {e}")
            metrics.invoice_extractions_total.labels(status="failed").inc()
            return self._mark_failed(invoice_id)

        metrics.invoice_extractions_total.labels(status="completed").inc()
        logger.info(f"Extraction completed for invoice {invoice_id}")

        if result.has_duplicate_keys():
            self._detect_duplicate(invoice_id)
        return ExtractionStatus.COMPLETED

    def _extract(self, invoice_id: str, file_ref: str) -> ExtractedInvoice:
        try:
            file_bytes = self.storage.read(file_ref)
        except OSError as e:
            raise ExtractionFailure(f"Could not read stored PDF {file_ref}: {e}") from e

        started = time.perf_counter()
        result = self.extractor.extract_invoice_fields(file_bytes)
        metrics.invoice_extraction_duration_seconds.observe(time.perf_counter() - started)

        if not result.success or result.invoice_data is None:
            raise ExtractionFailure(result.error or "Extraction returned no data")
        return result.invoice_data

    def _persist_extraction(self, invoice_id: str, result: ExtractedInvoice) -> None:
        requires_two_level, status = policy.initial_status(
            result.grand_total, self.settings.two_level_approval_threshold
        )
        with unit_of_work(self.db) as repo:
            if not repo.complete_extraction(invoice_id, requires_two_level, status):
                raise ConflictError(f"Invoice {invoice_id} is no longer being processed")
            repo.add_extracted_data(invoice_id, result)

    def _current_extraction_status(self, invoice_id: str) -> ExtractionStatus | None:
        with unit_of_work(self.db) as repo:
            invoice = repo.get_invoice(invoice_id)
            return invoice.extraction_status if invoice is not None else None

    def _mark_failed(self, invoice_id: str) -> ExtractionStatus:
        try:
            with unit_of_work(self.db) as repo:
                if not repo.fail_extraction(invoice_id):
                    invoice = repo.get_invoice(invoice_id)
                    if invoice is not None:
                        return invoice.extraction_status
        except Exception:
            logger.exception(f"Could not mark extraction FAILED for invoice {invoice_id}")
        return ExtractionStatus.FAILED

    def _detect_duplicate(self, invoice_id: str) -> None:
        try:
            with unit_of_work(self.db) as repo:
                duplicate_of = detect_duplicate(repo, invoice_id)
        except Exception:
            logger.exception(f"Duplicate detection failed for invoice {invoice_id}")
            return
        if duplicate_of is not None:
            metrics.invoice_duplicates_flagged_total.inc()

    # Status changes

    def change_status(
        self,
        invoice_id: str,
        actor_id: str,
        actor_role: UserRole | str,
        requested_status: InvoiceStatus | str,
        comment: str | None = None,
    ) -> InvoiceView:
        """Approve, reject or mark an invoice paid.

        Raises:
            InvalidArgumentError: Unknown target status or missing rejection comment
            ForbiddenError: Actor role may not perform this step
            NotFoundError: Invoice does not exist
            ConflictError: Target not reachable from the current status
        """
        try:
            target = policy.parse_status(requested_status, policy.REQUESTABLE_STATUSES)
            policy.require_comment(target, comment)

            with unit_of_work(self.db) as repo:
                invoice = self._load_invoice(repo, invoice_id)
                transition = policy.decide_transition(
                    status=invoice.status,
                    requires_two_level=invoice.requires_two_level,
                    extraction_status=invoice.extraction_status,
                    actor_role=actor_role,
                    requested_status=target,
                    comment=comment,
                )

                values: dict[str, Any] = {}
                if transition.records_senior_approval:
                    values = {"senior_approved_by": actor_id, "senior_approved_at": utcnow()}

                if not repo.compare_and_set_status(
                    invoice.id, transition.from_status, transition.to_status, **values
                ):
                    raise ConflictError(
                        "Invoice status changed while the request was being processed"
                    )

                audit.record_transition(repo, invoice, transition, actor_id)
                view = InvoiceView.model_validate(repo.get_invoice(invoice.id))
        except WorkflowError as e:
            _count_rejection(e)
            raise

        metrics.invoice_transitions_total.labels(
            action=transition.action.value, to_status=transition.to_status.value
        ).inc()
        logger.info(
            f"Invoice {invoice_id}: {transition.from_status.value} -> "
            f"{transition.to_status.value} by {actor_id}"
        )
        return view

    def bulk_change_status(
        self,
        invoice_ids: Iterable[str],
        actor_id: str,
        actor_role: UserRole | str,
        action: InvoiceStatus | str,
        comment: str | None = None,
    ) -> UpdateCount:
        """Approve or reject many single-level invoices at once.

        Only invoices currently PENDING_REVIEW are updated; every other id
        (unknown, two-level, already processed) is skipped silently. All
        updates, audit entries and notifications share one transaction.
        """
        ids = list(dict.fromkeys(invoice_ids))
        if not ids:
            raise InvalidArgumentError("invoiceIds array is required")
        transition = policy.decide_bulk_transition(actor_role, action, comment)

        updated = 0
        with unit_of_work(self.db) as repo:
            invoices = {invoice.id: invoice for invoice in repo.get_invoices(ids)}
            for invoice_id in ids:
                invoice = invoices.get(invoice_id)
                if invoice is None or not policy.bulk_eligible(
                    transition,
                    invoice.status,
                    invoice.requires_two_level,
                    invoice.extraction_status,
                ):
                    continue
                if not repo.compare_and_set_status(
                    invoice.id, InvoiceStatus.PENDING_REVIEW, transition.to_status
                ):
                    continue
                audit.record_transition(repo, invoice, transition, actor_id)
                updated += 1

        metrics.invoice_transitions_total.labels(
            action=transition.action.value, to_status=transition.to_status.value
        ).inc(updated)
        logger.info(
            f"Bulk {transition.to_status.value} by {actor_id}: "
            f"{updated} of {len(ids)} invoices updated"
        )
        return UpdateCount(updated_count=updated)

    # Extracted data edits

    def edit_extracted_data(
        self,
        invoice_id: str,
        actor_id: str,
        actor_role: UserRole | str,
        changes: ExtractedDataUpdate | dict[str, Any],
    ) -> ExtractedDataView:
        """Correct extracted fields without re-running extraction.

        Only fields present in changes are written; line_items, when present,
        replaces the whole collection. The approval route fixed at
        extraction time is not recomputed.

        Raises:
            ForbiddenError: Actor is not accounts staff
            InvalidArgumentError: changes contains unknown or malformed fields
            NotFoundError: Invoice or its extracted data does not exist
        """
        policy.require_approver(policy.parse_role(actor_role), "edit extracted data")
        if not isinstance(changes, ExtractedDataUpdate):
            try:
                changes = ExtractedDataUpdate.model_validate(changes)
            except ValidationError as e:
                raise InvalidArgumentError(f"Invalid extracted data: {e}") from e

        provided = set(changes.model_fields_set)
        with unit_of_work(self.db) as repo:
            self._load_invoice(repo, invoice_id)
            extracted = repo.get_extracted_data(invoice_id)
            if extracted is None:
                raise NotFoundError("No extracted data found for this invoice")

            for field_name in provided - {"line_items"}:
                setattr(extracted, field_name, getattr(changes, field_name))

            if "line_items" in provided and changes.line_items is not None:
                repo.replace_line_items(extracted, changes.line_items)

            audit.record_edit(repo, invoice_id, actor_id)
            repo.session.flush()
            view = ExtractedDataView.model_validate(extracted)

        logger.info(f"Extracted data of invoice {invoice_id} edited by {actor_id}")
        return view

    # Reads

    def get_invoice(
        self, invoice_id: str, requester_id: str, requester_role: UserRole | str
    ) -> InvoiceDetail:
        role = policy.parse_role(requester_role)
        with unit_of_work(self.db) as repo:
            invoice = self._load_invoice(repo, invoice_id)
            policy.ensure_can_view(role, requester_id, invoice.submitted_by)
            return InvoiceDetail.model_validate(invoice)

    def get_audit_log(
        self, invoice_id: str, requester_id: str, requester_role: UserRole | str
    ) -> list[InvoiceActionView]:
        """Audit trail of an invoice, oldest first."""
        role = policy.parse_role(requester_role)
        with unit_of_work(self.db) as repo:
            invoice = self._load_invoice(repo, invoice_id)
            policy.ensure_can_view(role, requester_id, invoice.submitted_by)
            return [InvoiceActionView.model_validate(a) for a in repo.list_actions(invoice_id)]

    @staticmethod
    def _load_invoice(repo: InvoiceRepository, invoice_id: str) -> Invoice:
        invoice = repo.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found")
        return invoice
