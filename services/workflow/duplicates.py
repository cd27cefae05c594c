"""Duplicate invoice detection.

Runs once per invoice, right after its extraction succeeds. Strategies are
tried in order and the first match wins:

1. Same invoice number and vendor name.
2. Same vendor name and grand total, and the same invoice date when the new
   invoice has one. Catches re-scanned receipts and informal invoices that
   carry no number.

A match only flags the invoice being checked; the earlier invoice is never
touched and the approval workflow is not blocked.
"""

import logging

from services.workflow.repository import InvoiceRepository

logger = logging.getLogger(__name__)


def find_duplicate(repo: InvoiceRepository, invoice_id: str) -> str | None:
    """Return the id of an invoice the given one appears to duplicate.

    Args:
        repo: Repository bound to the current transaction
        invoice_id: Invoice whose extracted data is checked

    Returns:
        Id of the matched invoice, or None if no match or no extracted data
    """
    extracted = repo.get_extracted_data(invoice_id)
    if extracted is None:
        return None

    match = None
    if extracted.invoice_number and extracted.vendor_name:
        match = repo.find_by_number_and_vendor(
            invoice_id, extracted.invoice_number, extracted.vendor_name
        )

    if match is None and extracted.vendor_name and extracted.grand_total is not None:
        match = repo.find_by_vendor_and_total(
            invoice_id,
            extracted.vendor_name,
            extracted.grand_total,
            extracted.invoice_date,
        )

    return match.invoice_id if match is not None else None


def detect_duplicate(repo: InvoiceRepository, invoice_id: str) -> str | None:
    """Flag the invoice as a duplicate if a matching invoice exists.

    Returns:
        Id of the invoice it duplicates, or None
    """
    duplicate_of = find_duplicate(repo, invoice_id)
    if duplicate_of is None or duplicate_of == invoice_id:
        return None

    repo.mark_duplicate(invoice_id, duplicate_of)
    logger.info(f"Invoice {invoice_id} flagged as duplicate of {duplicate_of}")
    return duplicate_of
