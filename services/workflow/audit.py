"""Audit trail and notification entries written alongside state changes.

Helpers here only stage rows on the caller's repository; they are committed
(or rolled back) together with the status write they describe.
"""

from services.workflow.models import Invoice
from services.workflow.policy import Transition
from services.workflow.repository import InvoiceRepository
from services.workflow.schema import ActionType


def record_submission(repo: InvoiceRepository, invoice: Invoice) -> None:
    repo.add_action(invoice.id, invoice.submitted_by, ActionType.SUBMITTED)


def record_edit(repo: InvoiceRepository, invoice_id: str, actor_id: str) -> None:
    repo.add_action(invoice_id, actor_id, ActionType.EDITED)


def record_transition(
    repo: InvoiceRepository,
    invoice: Invoice,
    transition: Transition,
    actor_id: str,
) -> int:
    """Write the audit entry and notifications for an applied transition.

    The submitter is always notified. Transitions that hand the invoice to
    another role (senior approval done, final approval pending) also notify
    every user holding that role.

    Returns:
        Number of notifications written
    """
    repo.add_action(invoice.id, actor_id, transition.action, transition.comment)

    filename = invoice.original_filename
    repo.add_notification(
        invoice.submitted_by,
        invoice.id,
        transition.submitter_message.format(filename=filename),
    )
    sent = 1

    if transition.broadcast_role is not None and transition.broadcast_message:
        message = transition.broadcast_message.format(filename=filename)
        for user_id in repo.list_user_ids_by_role(transition.broadcast_role):
            repo.add_notification(user_id, invoice.id, message)
            sent += 1

    return sent
