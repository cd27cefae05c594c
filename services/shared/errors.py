"""Error taxonomy for the invoice workflow.

Every caller-facing failure carries a human-readable message explaining which
precondition failed, so transport layers can surface it unchanged.
"""


class WorkflowError(Exception):
    """Base class for all workflow errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgumentError(WorkflowError):
    """Malformed or missing required input."""


class ForbiddenError(WorkflowError):
    """Actor lacks the role or ownership required for the operation."""


class NotFoundError(WorkflowError):
    """Invoice, extracted data, or notification does not exist."""


class ConflictError(WorkflowError):
    """Requested transition is not reachable from the current status."""


class ExtractionFailure(WorkflowError):
    """Gateway call or result parsing failed.

    Raised and absorbed inside the lifecycle engine; never reaches callers
    of the submission path.
    """
