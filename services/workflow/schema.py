"""Workflow enums and the read/write models exchanged with callers.

Read models are built from ORM rows (from_attributes) so nothing returned to
a caller is bound to an open session.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class UserRole(str, Enum):
    EMPLOYEE = "EMPLOYEE"
    ACCOUNTS = "ACCOUNTS"
    SENIOR_ACCOUNTS = "SENIOR_ACCOUNTS"


class InvoiceCategory(str, Enum):
    VENDOR_PAYMENT = "VENDOR_PAYMENT"
    REIMBURSEMENT = "REIMBURSEMENT"


class InvoiceStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    PENDING_SENIOR_APPROVAL = "PENDING_SENIOR_APPROVAL"
    PENDING_FINAL_APPROVAL = "PENDING_FINAL_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"


TERMINAL_STATUSES = frozenset({InvoiceStatus.REJECTED, InvoiceStatus.PAID})
PENDING_STATUSES = frozenset(
    {
        InvoiceStatus.PENDING_REVIEW,
        InvoiceStatus.PENDING_SENIOR_APPROVAL,
        InvoiceStatus.PENDING_FINAL_APPROVAL,
    }
)


class ExtractionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ActionType(str, Enum):
    SUBMITTED = "SUBMITTED"
    VIEWED = "VIEWED"
    EDITED = "EDITED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    MARKED_PAID = "MARKED_PAID"


class UserView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    role: UserRole


class LineItemView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    description: str | None
    quantity: Decimal | None
    unit_price: Decimal | None
    total: Decimal | None


class ExtractedDataView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_id: str
    vendor_name: str | None
    invoice_number: str | None
    invoice_date: str | None
    due_date: str | None
    subtotal: Decimal | None
    tax: Decimal | None
    grand_total: Decimal | None
    payment_terms: str | None
    bank_details: str | None
    confidence_scores: dict[str, float]
    line_items: list[LineItemView]


class InvoiceView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    submitted_by: str
    category: InvoiceCategory
    status: InvoiceStatus
    extraction_status: ExtractionStatus
    requires_two_level: bool
    is_duplicate: bool
    duplicate_of: str | None
    senior_approved_by: str | None
    senior_approved_at: datetime | None
    notes: str | None
    file_ref: str
    original_filename: str
    created_at: datetime
    updated_at: datetime


class InvoiceDetail(InvoiceView):
    """Invoice together with its extracted data, if extraction completed."""

    extracted_data: ExtractedDataView | None = None


class InvoiceActionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_id: str
    user_id: str
    action: ActionType
    comment: str | None
    created_at: datetime


class NotificationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    invoice_id: str | None
    message: str
    read: bool
    created_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class NotificationPage(BaseModel):
    items: list[NotificationView]
    unread_count: int
    pagination: Pagination


class InvoicePage(BaseModel):
    items: list[InvoiceDetail]
    pagination: Pagination


class UpdateCount(BaseModel):
    """Number of rows a batch operation changed."""

    updated_count: int


class LineItemInput(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = Field(None, alias="unitPrice")
    total: Decimal | None = None


class ExtractedDataUpdate(BaseModel):
    """Partial edit of extracted fields.

    Only fields the caller actually set are applied (see model_fields_set);
    a field set to None clears it. line_items, when set, replaces the whole
    collection. Keys may use the field names or the camelCase names the
    extraction gateway returns.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    vendor_name: str | None = Field(None, alias="vendorName")
    invoice_number: str | None = Field(None, alias="invoiceNumber")
    invoice_date: str | None = Field(None, alias="invoiceDate")
    due_date: str | None = Field(None, alias="dueDate")
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    grand_total: Decimal | None = Field(None, alias="grandTotal")
    payment_terms: str | None = Field(None, alias="paymentTerms")
    bank_details: str | None = Field(None, alias="bankDetails")
    line_items: list[LineItemInput] | None = Field(None, alias="lineItems")


class InvoiceFilters(BaseModel):
    """Listing filters; every field is optional."""

    statuses: list[InvoiceStatus] = Field(default_factory=list)
    category: InvoiceCategory | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    submitted_by: str | None = None
    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    search: str | None = None


class StatusOverview(BaseModel):
    total_invoices: int
    pending_count: int
    approved_count: int
    rejected_count: int
    paid_count: int
    total_amount: Decimal
    avg_processing_time_ms: int


class CategoryCount(BaseModel):
    category: InvoiceCategory
    count: int


class DailyCount(BaseModel):
    day: date
    count: int


class RecentInvoice(BaseModel):
    id: str
    filename: str
    status: InvoiceStatus
    vendor: str
    amount: Decimal | None
    created_at: datetime


class InvoiceStats(BaseModel):
    overview: StatusOverview
    category_breakdown: list[CategoryCount]
    status_timeline: list[DailyCount]
    recent_invoices: list[RecentInvoice]
