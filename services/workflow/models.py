"""ORM models for the invoice workflow.

Invoice owns its ExtractedData (and, through it, the line items).
InvoiceAction and Notification only reference an invoice id: they are kept
for audit purposes independently of the invoice row.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from services.storage.database import Base
from services.workflow.schema import (
    ActionType,
    ExtractionStatus,
    InvoiceCategory,
    InvoiceStatus,
    UserRole,
)

MONEY = Numeric(14, 2)


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=32)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(100), unique=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    submitted_by: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    category: Mapped[InvoiceCategory] = mapped_column(_enum(InvoiceCategory))
    status: Mapped[InvoiceStatus] = mapped_column(
        _enum(InvoiceStatus), default=InvoiceStatus.PENDING_REVIEW, index=True
    )
    extraction_status: Mapped[ExtractionStatus] = mapped_column(
        _enum(ExtractionStatus), default=ExtractionStatus.PENDING, index=True
    )
    extraction_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    requires_two_level: Mapped[bool] = mapped_column(Boolean, default=False)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False)
    duplicate_of: Mapped[str | None] = mapped_column(String(36), nullable=True)
    senior_approved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    senior_approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_ref: Mapped[str] = mapped_column(String(512))
    original_filename: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    extracted_data: Mapped["ExtractedData | None"] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )


class ExtractedData(Base):
    __tablename__ = "extracted_data"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), unique=True
    )
    vendor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    invoice_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    due_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subtotal: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    tax: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    grand_total: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    bank_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence_scores: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    invoice: Mapped[Invoice] = relationship(back_populates="extracted_data")
    line_items: Mapped[list["LineItem"]] = relationship(
        back_populates="extracted_data",
        cascade="all, delete-orphan",
        order_by="LineItem.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_extracted_data_number_vendor", "invoice_number", "vendor_name"),
        Index("ix_extracted_data_vendor_total", "vendor_name", "grand_total"),
    )


class LineItem(Base):
    __tablename__ = "line_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    extracted_data_id: Mapped[str] = mapped_column(
        ForeignKey("extracted_data.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    unit_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    total: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)

    extracted_data: Mapped[ExtractedData] = relationship(back_populates="line_items")


class InvoiceAction(Base):
    """Append-only audit entry."""

    __tablename__ = "invoice_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(String(36), index=True)
    user_id: Mapped[str] = mapped_column(String(36))
    action: Mapped[ActionType] = mapped_column(_enum(ActionType))
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    invoice_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    message: Mapped[str] = mapped_column(Text)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
