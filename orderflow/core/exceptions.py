"""
Order Workflow Errors

Every error the workflow core raises derives from OrderWorkflowError.
They are recoverable and surfaced to the caller; the API layer turns them
into an ErrorResponse using ``status_code`` and ``error_code``.
"""

from typing import Any, Optional


class OrderWorkflowError(Exception):
    """Base class for caller-surfaced workflow errors."""

    status_code: int = 400
    error_code: str = "order_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API error payload."""
        return {
            "success": False,
            "error": self.error_code,
            "detail": self.message,
            **self.details,
        }


class OrderNotFound(OrderWorkflowError):
    """Referenced order, menu item or modifier does not exist."""
    status_code = 404
    error_code = "not_found"


class InvalidStatus(OrderWorkflowError):
    """A status value is not part of the workflow."""
    status_code = 422
    error_code = "invalid_status"


class OrderValidationError(OrderWorkflowError):
    """The requested change is not permitted for this actor or state."""
    status_code = 400
    error_code = "validation_error"


class AlreadyClaimed(OrderWorkflowError):
    """Another staff member holds the claim slot."""
    status_code = 409
    error_code = "already_claimed"

    def __init__(self, message: str, holder: Optional[str]):
        super().__init__(message, holder=holder)
        self.holder = holder


class ItemUnavailable(OrderWorkflowError):
    """A menu item or modifier cannot currently be ordered."""
    status_code = 409
    error_code = "item_unavailable"


class TerminalState(OrderWorkflowError):
    """The order is completed or cancelled and can no longer change."""
    status_code = 409
    error_code = "terminal_state"


class StorageUnavailable(OrderWorkflowError):
    """The order store failed or kept losing the compare-and-swap."""
    status_code = 503
    error_code = "storage_unavailable"


class NotificationNotFound(OrderWorkflowError):
    """No inbox entry with this id is addressed to the caller."""
    status_code = 404
    error_code = "not_found"
