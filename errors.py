"""
Board Errors
============
Error taxonomy for the order board.

Every error carries a stable ``code`` for the UI layer and a ``retryable``
flag telling the user whether trying again makes sense.
"""

from typing import Any, Dict, Optional


class BoardError(Exception):
    """Base class for all order board errors."""

    code = "board_error"
    retryable = False

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (for banners and toasts)."""
        return {
            "code": self.code,
            "message": self.message,
            "order_id": self.order_id,
            "retryable": self.retryable,
        }


class InvalidTransition(BoardError):
    """Requested status change is not an edge of the transition graph."""

    code = "invalid_transition"


class ConflictBusy(BoardError):
    """Order already has a transition awaiting confirmation."""

    code = "conflict_busy"
    retryable = True


class ConfirmationFailed(BoardError):
    """Order store rejected or timed out a status update."""

    code = "confirmation_failed"
    retryable = True


class TransitionStuck(ConfirmationFailed):
    """Pending transition contradicted by too many refreshes in a row."""

    code = "transition_stuck"


class ProjectionDegraded(BoardError):
    """Order record had malformed data; shown with a flag."""

    code = "projection_degraded"


class RefreshFailed(BoardError):
    """Periodic fetch failed; previous board state retained."""

    code = "refresh_failed"
    retryable = True


class OrderNotFound(BoardError):
    """No order with the given id in the local cache."""

    code = "order_not_found"


class InvalidOrder(BoardError):
    """Order placement data failed validation."""

    code = "invalid_order"


class StoreError(BoardError):
    """Order store call failed."""

    code = "store_error"
    retryable = True


class StoreUnavailable(StoreError):
    """Store client missing or circuit breaker open."""

    code = "store_unavailable"


class RecordNotFound(StoreError):
    """Store has no record with the given id."""

    code = "record_not_found"
    retryable = False


class StatusConflict(StoreError):
    """Conditional status write found the record in an unexpected status."""

    code = "status_conflict"
    retryable = False
