"""Invoice data models for structured extraction.

Mirrors the JSON object the extraction prompt asks the model to return.
Money values are parsed leniently: currency symbols and thousands separators
are stripped, anything still unparseable becomes None.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field, field_validator

_MONEY_NOISE = re.compile(r"[^\d.\-]")


def parse_money(value: Any) -> Decimal | None:
    """Coerce a loosely formatted amount to Decimal.

    Args:
        value: Number, numeric string (e.g. "$1,250.00") or None

    Returns:
        Decimal amount, or None if value is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = _MONEY_NOISE.sub("", value)
        if not cleaned:
            return None
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return None
    return None


class ExtractedLineItem(BaseModel):
    """Single line of an invoice."""

    model_config = {"populate_by_name": True}

    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = Field(None, alias="unitPrice")
    total: Decimal | None = None

    @field_validator("quantity", "unit_price", "total", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal | None:
        return parse_money(value)


class ExtractedInvoice(BaseModel):
    """Structured invoice data extracted from a submitted PDF.

    Field aliases match the camelCase keys requested from the model, so a raw
    JSON response validates directly.
    """

    model_config = {"populate_by_name": True}

    vendor_name: str | None = Field(None, alias="vendorName", description="Vendor company name")
    invoice_number: str | None = Field(
        None, alias="invoiceNumber", description="Vendor's invoice identifier"
    )
    invoice_date: str | None = Field(None, alias="invoiceDate", description="YYYY-MM-DD")
    due_date: str | None = Field(None, alias="dueDate", description="YYYY-MM-DD")

    line_items: list[ExtractedLineItem] = Field(default_factory=list, alias="lineItems")

    # Financial details
    subtotal: Decimal | None = Field(None, description="Subtotal before tax")
    tax: Decimal | None = Field(None, description="Tax amount")
    grand_total: Decimal | None = Field(
        None, alias="grandTotal", description="Total amount including tax"
    )

    payment_terms: str | None = Field(None, alias="paymentTerms")
    bank_details: str | None = Field(None, alias="bankDetails")

    # Per-field confidence, 0.0-1.0; absent keys mean "not scored"
    confidence_scores: dict[str, float] = Field(default_factory=dict, alias="confidenceScores")

    @field_validator("subtotal", "tax", "grand_total", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal | None:
        return parse_money(value)

    @field_validator("line_items", mode="before")
    @classmethod
    def _default_line_items(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("confidence_scores", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> dict[str, float]:
        if not isinstance(value, dict):
            return {}
        scores: dict[str, float] = {}
        for field_name, score in value.items():
            if isinstance(score, bool) or not isinstance(score, (int, float)):
                continue
            scores[str(field_name)] = min(1.0, max(0.0, float(score)))
        return scores

    def has_duplicate_keys(self) -> bool:
        """Whether any field used by duplicate detection is present."""
        return bool(self.vendor_name or self.invoice_number or self.grand_total is not None)
