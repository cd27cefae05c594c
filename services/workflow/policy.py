"""Approval policy: which status change an actor may apply to an invoice.

Every role and stage rule of the workflow lives here. Functions are pure:
they look only at the values passed in and either return the transition to
apply or raise the error describing which precondition failed.

State machine:

    PENDING_REVIEW ---------------------------(ACCOUNTS|SENIOR)--> APPROVED
    PENDING_SENIOR_APPROVAL --(SENIOR)--> PENDING_FINAL_APPROVAL --(ACCOUNTS)--> APPROVED
    APPROVED --(ACCOUNTS|SENIOR)--> PAID
    any non-terminal --(ACCOUNTS|SENIOR, comment)--> REJECTED
"""

from dataclasses import dataclass
from decimal import Decimal

from services.shared.errors import ConflictError, ForbiddenError, InvalidArgumentError
from services.workflow.schema import (
    TERMINAL_STATUSES,
    ActionType,
    ExtractionStatus,
    InvoiceStatus,
    UserRole,
)

APPROVER_ROLES = frozenset({UserRole.ACCOUNTS, UserRole.SENIOR_ACCOUNTS})
REQUESTABLE_STATUSES = (InvoiceStatus.APPROVED, InvoiceStatus.REJECTED, InvoiceStatus.PAID)
BULK_ACTIONS = (InvoiceStatus.APPROVED, InvoiceStatus.REJECTED)


@dataclass(frozen=True)
class Transition:
    """Outcome of a successful policy decision.

    Messages are templates formatted with the invoice's display filename.
    """

    from_status: InvoiceStatus
    to_status: InvoiceStatus
    action: ActionType
    comment: str | None
    submitter_message: str
    broadcast_role: UserRole | None = None
    broadcast_message: str | None = None
    records_senior_approval: bool = False


def parse_status(value: InvoiceStatus | str, allowed: tuple[InvoiceStatus, ...]) -> InvoiceStatus:
    """Parse a requested status, accepting only the given targets.

    Raises:
        InvalidArgumentError: If value is not one of allowed
    """
    try:
        status = InvoiceStatus(value)
    except ValueError:
        status = None
    if status not in allowed:
        names = ", ".join(s.value for s in allowed)
        raise InvalidArgumentError(f"Valid status is required ({names})")
    return status


def parse_role(value: UserRole | str) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        raise InvalidArgumentError(f"Unknown role: {value}") from None


def require_comment(status: InvoiceStatus, comment: str | None) -> None:
    if status == InvoiceStatus.REJECTED and not (comment and comment.strip()):
        raise InvalidArgumentError("Comment is required when rejecting an invoice")


def require_approver(role: UserRole, operation: str = "change invoice status") -> None:
    if role not in APPROVER_ROLES:
        raise ForbiddenError(f"Only accounts staff can {operation}")


def ensure_can_view(role: UserRole, requester_id: str, submitter_id: str) -> None:
    """Employees may only see their own invoices."""
    if role == UserRole.EMPLOYEE and requester_id != submitter_id:
        raise ForbiddenError("You can only view your own invoices")


def requires_two_level_approval(grand_total: Decimal | None, threshold: Decimal) -> bool:
    """Whether an extracted grand total needs senior + final approval.

    A missing total counts as zero.
    """
    return (grand_total or Decimal(0)) >= threshold


def initial_status(grand_total: Decimal | None, threshold: Decimal) -> tuple[bool, InvoiceStatus]:
    """Workflow status an invoice enters once extraction succeeds."""
    if requires_two_level_approval(grand_total, threshold):
        return True, InvoiceStatus.PENDING_SENIOR_APPROVAL
    return False, InvoiceStatus.PENDING_REVIEW


def decide_transition(
    status: InvoiceStatus,
    requires_two_level: bool,
    extraction_status: ExtractionStatus,
    actor_role: UserRole | str,
    requested_status: InvoiceStatus | str,
    comment: str | None = None,
) -> Transition:
    """Decide the transition for a single-invoice status change request.

    Input validation runs before any state or role check, so a rejection
    without a comment is always InvalidArgumentError.

    Raises:
        InvalidArgumentError: Unknown target status or missing rejection comment
        ForbiddenError: Actor role may not perform this step
        ConflictError: Target not reachable from the current status
    """
    target = parse_status(requested_status, REQUESTABLE_STATUSES)
    require_comment(target, comment)
    role = parse_role(actor_role)
    require_approver(role)

    if target == InvoiceStatus.REJECTED:
        if status in TERMINAL_STATUSES:
            raise ConflictError(f"Invoice is already {status.value.lower()}")
        return Transition(
            from_status=status,
            to_status=InvoiceStatus.REJECTED,
            action=ActionType.REJECTED,
            comment=comment,
            submitter_message="Your invoice {filename} has been rejected.",
        )

    if target == InvoiceStatus.PAID:
        if status != InvoiceStatus.APPROVED:
            raise ConflictError("Only approved invoices can be marked as paid")
        return Transition(
            from_status=status,
            to_status=InvoiceStatus.PAID,
            action=ActionType.MARKED_PAID,
            comment=comment,
            submitter_message="Your invoice {filename} has been marked as paid.",
        )

    if extraction_status != ExtractionStatus.COMPLETED:
        raise ConflictError("Invoice extraction has not completed")

    if not requires_two_level:
        if status != InvoiceStatus.PENDING_REVIEW:
            raise ConflictError("Invoice is not pending review")
        return Transition(
            from_status=status,
            to_status=InvoiceStatus.APPROVED,
            action=ActionType.APPROVED,
            comment=comment,
            submitter_message="Your invoice {filename} has been approved.",
        )

    if status == InvoiceStatus.PENDING_SENIOR_APPROVAL:
        if role != UserRole.SENIOR_ACCOUNTS:
            raise ForbiddenError(
                "Only senior accountants can give first-level approval for high-value invoices"
            )
        return Transition(
            from_status=status,
            to_status=InvoiceStatus.PENDING_FINAL_APPROVAL,
            action=ActionType.APPROVED,
            comment=comment or "First-level approval (senior)",
            submitter_message=(
                "Your invoice {filename} has received senior approval. Awaiting final approval."
            ),
            broadcast_role=UserRole.ACCOUNTS,
            broadcast_message="Invoice {filename} requires final approval.",
            records_senior_approval=True,
        )

    if status == InvoiceStatus.PENDING_FINAL_APPROVAL:
        if role != UserRole.ACCOUNTS:
            raise ForbiddenError("Only accountants can give final approval for high-value invoices")
        return Transition(
            from_status=status,
            to_status=InvoiceStatus.APPROVED,
            action=ActionType.APPROVED,
            comment=comment or "Final approval",
            submitter_message="Your invoice {filename} has been fully approved.",
        )

    raise ConflictError("Invoice is not awaiting approval")


def decide_bulk_transition(
    actor_role: UserRole | str,
    action: InvoiceStatus | str,
    comment: str | None = None,
) -> Transition:
    """Validate a bulk approve/reject request.

    Bulk actions only ever move PENDING_REVIEW invoices; two-level invoices
    must go through decide_transition one at a time.
    """
    target = parse_status(action, BULK_ACTIONS)
    require_comment(target, comment)
    require_approver(parse_role(actor_role), "perform bulk actions")

    verb = "approved" if target == InvoiceStatus.APPROVED else "rejected"
    return Transition(
        from_status=InvoiceStatus.PENDING_REVIEW,
        to_status=target,
        action=ActionType.APPROVED if target == InvoiceStatus.APPROVED else ActionType.REJECTED,
        comment=comment,
        submitter_message="Your invoice {filename} has been " + verb + ".",
    )


def bulk_eligible(
    transition: Transition,
    status: InvoiceStatus,
    requires_two_level: bool,
    extraction_status: ExtractionStatus,
) -> bool:
    """Whether one invoice of a bulk request should be updated (else skipped)."""
    if status != InvoiceStatus.PENDING_REVIEW or requires_two_level:
        return False
    if transition.to_status == InvoiceStatus.APPROVED:
        return extraction_status == ExtractionStatus.COMPLETED
    return True
