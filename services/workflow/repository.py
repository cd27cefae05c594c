"""Persistence operations for the workflow, bound to one session.

A repository never commits: the caller owns the transaction. Status and
extraction-status writes are compare-and-set updates, so two transactions
racing on the same invoice cannot both succeed.
"""

from collections.abc import Generator, Iterable, Sequence
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from services.extraction.schema import ExtractedInvoice
from services.storage.database import Database
from services.workflow.models import (
    ExtractedData,
    Invoice,
    InvoiceAction,
    LineItem,
    Notification,
    User,
    utcnow,
)
from services.workflow.schema import (
    ActionType,
    ExtractionStatus,
    InvoiceCategory,
    InvoiceStatus,
    LineItemInput,
    UserRole,
)


class InvoiceRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Users

    def add_user(self, username: str, email: str, role: UserRole) -> User:
        user = User(username=username, email=email, role=role)
        self.session.add(user)
        self.session.flush()
        return user

    def get_user(self, user_id: str) -> User | None:
        return self.session.get(User, user_id)

    def list_user_ids_by_role(self, role: UserRole) -> list[str]:
        stmt = select(User.id).where(User.role == role).order_by(User.created_at)
        return list(self.session.scalars(stmt))

    # Invoices

    def add_invoice(
        self,
        submitted_by: str,
        category: InvoiceCategory,
        file_ref: str,
        original_filename: str,
        notes: str | None,
    ) -> Invoice:
        invoice = Invoice(
            submitted_by=submitted_by,
            category=category,
            status=InvoiceStatus.PENDING_REVIEW,
            extraction_status=ExtractionStatus.PENDING,
            file_ref=file_ref,
            original_filename=original_filename,
            notes=notes,
        )
        self.session.add(invoice)
        self.session.flush()
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        return self.session.get(Invoice, invoice_id, populate_existing=True)

    def get_invoices(self, invoice_ids: Iterable[str]) -> list[Invoice]:
        ids = list(invoice_ids)
        if not ids:
            return []
        stmt = select(Invoice).where(Invoice.id.in_(ids))
        return list(self.session.scalars(stmt))

    def compare_and_set_status(
        self,
        invoice_id: str,
        expected: InvoiceStatus,
        new: InvoiceStatus,
        **values: object,
    ) -> bool:
        """Move an invoice to a new status only if it is still in expected.

        Returns:
            True if this call performed the update
        """
        stmt = (
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == expected)
            .values(status=new, **values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def claim_extraction(self, invoice_id: str, claimable: Sequence[ExtractionStatus]) -> bool:
        """Atomically move extraction_status to PROCESSING from a claimable state."""
        stmt = (
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.extraction_status.in_(claimable))
            .values(extraction_status=ExtractionStatus.PROCESSING, extraction_started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def complete_extraction(
        self, invoice_id: str, requires_two_level: bool, status: InvoiceStatus
    ) -> bool:
        """Mark extraction COMPLETED and fix the approval route.

        The workflow status is only written while the invoice still sits in
        its untouched placeholder state.

        Returns:
            False if the invoice was no longer PROCESSING
        """
        completed = self.session.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.extraction_status == ExtractionStatus.PROCESSING,
            )
            .values(
                extraction_status=ExtractionStatus.COMPLETED,
                requires_two_level=requires_two_level,
            )
            .execution_options(synchronize_session=False)
        )
        if completed.rowcount != 1:
            return False
        self.compare_and_set_status(invoice_id, InvoiceStatus.PENDING_REVIEW, status)
        return True

    def fail_extraction(self, invoice_id: str) -> bool:
        stmt = (
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.extraction_status == ExtractionStatus.PROCESSING,
            )
            .values(extraction_status=ExtractionStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def mark_duplicate(self, invoice_id: str, duplicate_of: str) -> None:
        self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .values(is_duplicate=True, duplicate_of=duplicate_of)
            .execution_options(synchronize_session=False)
        )

    def list_retryable_extraction_ids(self, stale_before: datetime) -> list[str]:
        """FAILED invoices plus PROCESSING ones whose attempt started before stale_before."""
        stalled = and_(
            Invoice.extraction_status == ExtractionStatus.PROCESSING,
            or_(
                Invoice.extraction_started_at.is_(None),
                Invoice.extraction_started_at < stale_before,
            ),
        )
        stmt = (
            select(Invoice.id)
            .where(or_(Invoice.extraction_status == ExtractionStatus.FAILED, stalled))
            .order_by(Invoice.created_at.desc())
        )
        return list(self.session.scalars(stmt))

    # Extracted data

    def add_extracted_data(self, invoice_id: str, result: ExtractedInvoice) -> ExtractedData:
        extracted = ExtractedData(
            invoice_id=invoice_id,
            vendor_name=result.vendor_name,
            invoice_number=result.invoice_number,
            invoice_date=result.invoice_date,
            due_date=result.due_date,
            subtotal=result.subtotal,
            tax=result.tax,
            grand_total=result.grand_total,
            payment_terms=result.payment_terms,
            bank_details=result.bank_details,
            confidence_scores=dict(result.confidence_scores),
            line_items=[
                LineItem(
                    position=position,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total=item.total,
                )
                for position, item in enumerate(result.line_items)
            ],
        )
        self.session.add(extracted)
        self.session.flush()
        return extracted

    def get_extracted_data(self, invoice_id: str) -> ExtractedData | None:
        stmt = select(ExtractedData).where(ExtractedData.invoice_id == invoice_id)
        return self.session.scalars(stmt).first()

    def replace_line_items(self, extracted: ExtractedData, items: Sequence[LineItemInput]) -> None:
        extracted.line_items.clear()
        self.session.flush()
        extracted.line_items.extend(
            LineItem(
                position=position,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=item.total,
            )
            for position, item in enumerate(items)
        )
        self.session.flush()

    def find_by_number_and_vendor(
        self, invoice_id: str, invoice_number: str, vendor_name: str
    ) -> ExtractedData | None:
        stmt = (
            select(ExtractedData)
            .where(
                ExtractedData.invoice_number == invoice_number,
                ExtractedData.vendor_name == vendor_name,
                ExtractedData.invoice_id != invoice_id,
            )
            .order_by(ExtractedData.created_at)
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def find_by_vendor_and_total(
        self,
        invoice_id: str,
        vendor_name: str,
        grand_total: object,
        invoice_date: str | None,
    ) -> ExtractedData | None:
        stmt = select(ExtractedData).where(
            ExtractedData.vendor_name == vendor_name,
            ExtractedData.grand_total == grand_total,
            ExtractedData.invoice_id != invoice_id,
        )
        if invoice_date:
            stmt = stmt.where(ExtractedData.invoice_date == invoice_date)
        return self.session.scalars(stmt.order_by(ExtractedData.created_at).limit(1)).first()

    # Audit trail

    def add_action(
        self,
        invoice_id: str,
        user_id: str,
        action: ActionType,
        comment: str | None = None,
    ) -> InvoiceAction:
        entry = InvoiceAction(
            invoice_id=invoice_id, user_id=user_id, action=action, comment=comment
        )
        self.session.add(entry)
        return entry

    def list_actions(self, invoice_id: str) -> list[InvoiceAction]:
        stmt = (
            select(InvoiceAction)
            .where(InvoiceAction.invoice_id == invoice_id)
            .order_by(InvoiceAction.created_at, InvoiceAction.id)
        )
        return list(self.session.scalars(stmt))

    # Notifications

    def add_notification(self, user_id: str, invoice_id: str | None, message: str) -> Notification:
        notification = Notification(user_id=user_id, invoice_id=invoice_id, message=message)
        self.session.add(notification)
        return notification

    def get_notification(self, notification_id: str) -> Notification | None:
        return self.session.get(Notification, notification_id)

    def list_notifications(self, user_id: str, offset: int, limit: int) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id)
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def count_notifications(self, user_id: str, unread_only: bool = False) -> int:
        stmt = select(func.count()).select_from(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        return self.session.scalar(stmt) or 0

    def mark_notification_read(self, notification_id: str) -> None:
        self.session.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(read=True)
            .execution_options(synchronize_session=False)
        )

    def mark_all_notifications_read(self, user_id: str) -> int:
        result = self.session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


@contextmanager
def unit_of_work(db: Database) -> Generator[InvoiceRepository, None, None]:
    """Repository over one transaction: commit on success, rollback on error."""
    with db.session() as session:
        yield InvoiceRepository(session)
