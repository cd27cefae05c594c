"""Read-side queries: invoice listing and analytics.

All filters are bound as query parameters through SQLAlchemy expressions;
no SQL text is assembled from caller input.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Select, func, or_, select

from services.shared.config import Settings
from services.shared.errors import InvalidArgumentError
from services.storage.database import Database
from services.workflow import policy
from services.workflow.models import ExtractedData, Invoice
from services.workflow.notifications import build_pagination, clamp_page
from services.workflow.repository import unit_of_work
from services.workflow.schema import (
    PENDING_STATUSES,
    CategoryCount,
    DailyCount,
    InvoiceCategory,
    InvoiceDetail,
    InvoiceFilters,
    InvoicePage,
    InvoiceStats,
    InvoiceStatus,
    RecentInvoice,
    StatusOverview,
    UserRole,
)

SORTABLE_COLUMNS = {
    "created_at": Invoice.created_at,
    "updated_at": Invoice.updated_at,
    "status": Invoice.status,
    "category": Invoice.category,
}
PROCESSED_STATUSES = (InvoiceStatus.APPROVED, InvoiceStatus.REJECTED, InvoiceStatus.PAID)
TIMELINE_DAYS = 30
RECENT_LIMIT = 5


def _apply_filters(stmt: Select, filters: InvoiceFilters) -> Select:
    if filters.statuses:
        stmt = stmt.where(Invoice.status.in_(filters.statuses))
    if filters.category is not None:
        stmt = stmt.where(Invoice.category == filters.category)
    if filters.date_from is not None:
        stmt = stmt.where(Invoice.created_at >= filters.date_from)
    if filters.date_to is not None:
        stmt = stmt.where(Invoice.created_at <= filters.date_to)
    if filters.submitted_by is not None:
        stmt = stmt.where(Invoice.submitted_by == filters.submitted_by)
    if filters.amount_min is not None:
        stmt = stmt.where(ExtractedData.grand_total >= filters.amount_min)
    if filters.amount_max is not None:
        stmt = stmt.where(ExtractedData.grand_total <= filters.amount_max)
    if filters.search:
        pattern = f"%{filters.search.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Invoice.original_filename).like(pattern),
                func.lower(ExtractedData.vendor_name).like(pattern),
                func.lower(ExtractedData.invoice_number).like(pattern),
            )
        )
    return stmt


class InvoiceQueryService:
    def __init__(self, db: Database, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    def list_invoices(
        self,
        requester_id: str,
        requester_role: UserRole | str,
        filters: InvoiceFilters | None = None,
        page: int | None = 1,
        limit: int | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> InvoicePage:
        """Paginated invoice listing.

        Employees only ever see their own invoices and cannot filter by
        submitter.

        Raises:
            InvalidArgumentError: Unknown sort column
        """
        role = policy.parse_role(requester_role)
        filters = (filters or InvoiceFilters()).model_copy()
        if role == UserRole.EMPLOYEE:
            filters.submitted_by = requester_id

        column = SORTABLE_COLUMNS.get(sort_by)
        if column is None:
            raise InvalidArgumentError(f"Cannot sort by {sort_by}")
        order = column.asc() if sort_order == "asc" else column.desc()

        page, limit = clamp_page(
            page,
            limit,
            self.settings.notifications_default_limit,
            self.settings.pagination_max_limit,
        )
        base = _apply_filters(
            select(Invoice).outerjoin(ExtractedData, ExtractedData.invoice_id == Invoice.id),
            filters,
        )
        count_stmt = select(func.count()).select_from(base.with_only_columns(Invoice.id).subquery())

        with unit_of_work(self.db) as repo:
            total = repo.session.scalar(count_stmt) or 0
            rows = repo.session.scalars(
                base.order_by(order, Invoice.id).offset((page - 1) * limit).limit(limit)
            )
            return InvoicePage(
                items=[InvoiceDetail.model_validate(invoice) for invoice in rows],
                pagination=build_pagination(page, limit, total),
            )

    def invoice_stats(
        self,
        requester_role: UserRole | str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        category: InvoiceCategory | str | None = None,
    ) -> InvoiceStats:
        """Aggregated workflow analytics for accounts staff."""
        policy.require_approver(policy.parse_role(requester_role), "view analytics")
        try:
            parsed_category = InvoiceCategory(category) if category else None
        except ValueError:
            raise InvalidArgumentError(f"Unknown category: {category}") from None
        filters = InvoiceFilters(date_from=start_date, date_to=end_date, category=parsed_category)

        def scoped(stmt: Select) -> Select:
            return _apply_filters(stmt, filters)

        status_counts = scoped(
            select(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status)
        )
        category_counts = scoped(
            select(Invoice.category, func.count(Invoice.id))
            .group_by(Invoice.category)
            .order_by(Invoice.category)
        )
        total_amount = scoped(
            select(func.sum(ExtractedData.grand_total)).join(
                Invoice, Invoice.id == ExtractedData.invoice_id
            )
        )
        day = func.date(Invoice.created_at)
        timeline = scoped(
            select(day.label("day"), func.count(Invoice.id))
            .group_by(day)
            .order_by(day.desc())
            .limit(TIMELINE_DAYS)
        )
        recent = scoped(
            select(Invoice).order_by(Invoice.created_at.desc(), Invoice.id).limit(RECENT_LIMIT)
        )
        processed = scoped(
            select(Invoice.created_at, Invoice.updated_at).where(
                Invoice.status.in_(PROCESSED_STATUSES)
            )
        )

        with unit_of_work(self.db) as repo:
            session = repo.session
            by_status = {status: count for status, count in session.execute(status_counts)}
            amount = session.scalar(total_amount)
            categories = [
                CategoryCount(category=cat, count=count)
                for cat, count in session.execute(category_counts)
            ]
            days = [DailyCount(day=d, count=count) for d, count in session.execute(timeline)]
            recent_invoices = [
                RecentInvoice(
                    id=invoice.id,
                    filename=invoice.original_filename,
                    status=invoice.status,
                    vendor=(invoice.extracted_data and invoice.extracted_data.vendor_name)
                    or "Unknown",
                    amount=invoice.extracted_data.grand_total if invoice.extracted_data else None,
                    created_at=invoice.created_at,
                )
                for invoice in session.scalars(recent)
            ]
            durations = [
                (updated - created).total_seconds() * 1000
                for created, updated in session.execute(processed)
            ]

        overview = StatusOverview(
            total_invoices=sum(by_status.values()),
            pending_count=sum(by_status.get(s, 0) for s in PENDING_STATUSES),
            approved_count=by_status.get(InvoiceStatus.APPROVED, 0),
            rejected_count=by_status.get(InvoiceStatus.REJECTED, 0),
            paid_count=by_status.get(InvoiceStatus.PAID, 0),
            total_amount=Decimal(str(amount)) if amount is not None else Decimal(0),
            avg_processing_time_ms=round(sum(durations) / len(durations)) if durations else 0,
        )
        return InvoiceStats(
            overview=overview,
            category_breakdown=categories,
            status_timeline=list(reversed(days)),
            recent_invoices=recent_invoices,
        )
