"""
Order Status State Machine
==========================
Canonical order statuses and the fixed transition graph.

State flow:
    NEW -> PREPARING -> READY
    any non-terminal status -> CANCELLED

State invariants:
- Validation is pure: no logging, no side effects
- No status may transition to itself
- There are no backward edges; moving an order back (e.g. READY -> PREPARING)
  is only possible through an administrative edit
- Status synonyms are normalized once, at ingestion
"""

import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """
    Canonical order lifecycle statuses.

    Terminal states: PICKED_UP, CANCELLED
    """
    NEW = "New"
    PREPARING = "Preparing"
    READY = "Ready"
    PICKED_UP = "Picked Up"
    CANCELLED = "Cancelled"

    @property
    def store_value(self) -> str:
        """Status string as persisted by the order store."""
        return _STORE_VALUES[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


_STORE_VALUES: Dict[OrderStatus, str] = {
    OrderStatus.NEW: "pending",
    OrderStatus.PREPARING: "preparing",
    OrderStatus.READY: "ready",
    OrderStatus.PICKED_UP: "completed",
    OrderStatus.CANCELLED: "cancelled",
}

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PICKED_UP,
    OrderStatus.CANCELLED,
})

# Forward edges; cancellation is handled separately
VALID_TRANSITIONS: FrozenSet[Tuple[OrderStatus, OrderStatus]] = frozenset({
    (OrderStatus.NEW, OrderStatus.PREPARING),
    (OrderStatus.PREPARING, OrderStatus.READY),
})

# Board columns, in display order
BOARD_COLUMNS: Tuple[OrderStatus, ...] = (
    OrderStatus.NEW,
    OrderStatus.PREPARING,
    OrderStatus.READY,
)

_SYNONYMS: Dict[str, OrderStatus] = {
    "new": OrderStatus.NEW,
    "pending": OrderStatus.NEW,
    "preparing": OrderStatus.PREPARING,
    "ready": OrderStatus.READY,
    "picked up": OrderStatus.PICKED_UP,
    "pickedup": OrderStatus.PICKED_UP,
    "completed": OrderStatus.PICKED_UP,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
}


def normalize_status(value: Any) -> Optional[OrderStatus]:
    """
    Map any known status spelling to the canonical enum.

    Accepts enum members, canonical display names and the store vocabulary
    (``pending/preparing/ready/completed/cancelled``), case-insensitively.

    Args:
        value: Raw status value

    Returns:
        OrderStatus, or None if the value is not a known status
    """
    if isinstance(value, OrderStatus):
        return value

    if not isinstance(value, str):
        return None

    key = " ".join(value.replace("_", " ").replace("-", " ").lower().split())
    return _SYNONYMS.get(key)


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """
    Check whether ``current -> target`` is an edge of the transition graph.

    Args:
        current: Status the order is in
        target: Requested status

    Returns:
        True if the transition is allowed
    """
    if current == target:
        return False

    if target == OrderStatus.CANCELLED:
        return current not in TERMINAL_STATUSES

    return (current, target) in VALID_TRANSITIONS


def allowed_targets(current: OrderStatus) -> Tuple[OrderStatus, ...]:
    """Statuses reachable from ``current`` in one validated step."""
    return tuple(
        target for target in OrderStatus
        if is_valid_transition(current, target)
    )
