"""
Order Projection
================
Turns raw order store records into the immutable Order shape the board
works with.

Guarantees:
- Never raises for malformed input; problems are recorded in ``diagnostics``
- Status normalization happens here and nowhere else
- Totals are recomputed from items when the stored total cannot be trusted
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter

from order_status import OrderStatus, normalize_status


logger = logging.getLogger(__name__)


# Half a currency minor unit
TOTAL_TOLERANCE = 0.005
DISPLAY_NUMBER_LENGTH = 8
GUEST_NAME = "Guest"
UNKNOWN_ITEM_NAME = "Unknown Item"

# Postgres trims trailing zeros from fractional seconds
_FRACTION = re.compile(r"\.(\d+)")


# ============================================================================
# METRICS
# ============================================================================

projection_diagnostics = Counter(
    'order_projection_diagnostics_total',
    'Order projection diagnostics',
    ['diagnostic']
)


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class OrderItem:
    """Single order line."""
    name: str
    quantity: int
    unit_price: float

    @property
    def subtotal(self) -> float:
        return round(self.quantity * self.unit_price, 2)

    @property
    def display_line(self) -> str:
        return f"{self.quantity}x {self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "price": self.unit_price,
        }


@dataclass(frozen=True)
class Customer:
    """Customer snapshot taken when the order was placed."""
    name: str = GUEST_NAME
    phone: str = ""
    email: Optional[str] = None
    customer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.customer_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
        }


@dataclass(frozen=True)
class Order:
    """
    Normalized order as shown on the board.

    ``pending_transition`` is client-only: it holds an optimistic status
    change that has not been confirmed by the order store yet.
    """
    id: str
    status: OrderStatus
    customer: Customer = field(default_factory=Customer)
    items: Tuple[OrderItem, ...] = ()
    total_amount: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pickup_time: Optional[str] = None
    pending_transition: Optional[OrderStatus] = None
    items_unparseable: bool = False
    diagnostics: Tuple[str, ...] = ()

    @property
    def display_number(self) -> str:
        return self.id[:DISPLAY_NUMBER_LENGTH]

    @property
    def order_number(self) -> str:
        return f"#{self.display_number}"

    @property
    def visible_status(self) -> OrderStatus:
        """Status the staff board shows (optimistic target when pending)."""
        return self.pending_transition or self.status

    @property
    def is_pending(self) -> bool:
        return self.pending_transition is not None

    @property
    def item_lines(self) -> List[str]:
        return [item.display_line for item in self.items]

    def with_pending(self, target: OrderStatus) -> "Order":
        return replace(self, pending_transition=target)

    def settled(self, status: OrderStatus, updated_at: Optional[datetime] = None) -> "Order":
        return replace(
            self,
            status=status,
            pending_transition=None,
            updated_at=updated_at or self.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-friendly dictionary."""
        return {
            "id": self.id,
            "order_number": self.order_number,
            "status": self.status.value,
            "visible_status": self.visible_status.value,
            "pending_transition": (
                self.pending_transition.value if self.pending_transition else None
            ),
            "customer": self.customer.to_dict(),
            "items": [item.to_dict() for item in self.items],
            "item_lines": self.item_lines,
            "total_amount": self.total_amount,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "pickup_time": self.pickup_time,
            "items_unparseable": self.items_unparseable,
            "diagnostics": list(self.diagnostics),
        }


# ============================================================================
# PARSING HELPERS
# ============================================================================

def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_items(raw_items: Any) -> Tuple[Optional[List[OrderItem]], bool]:
    """
    Parse the items collection of a raw record.

    Args:
        raw_items: JSON string or list of item dicts

    Returns:
        (items, priced) where items is None when the collection cannot be
        parsed and priced is False if any item lacks a usable price
    """
    if isinstance(raw_items, str):
        try:
            raw_items = json.loads(raw_items)
        except ValueError:
            return None, False

    if not isinstance(raw_items, list):
        return None, False

    items: List[OrderItem] = []
    priced = True

    for raw in raw_items:
        if not isinstance(raw, dict):
            return None, False

        quantity = raw.get("quantity")
        if quantity is None:
            quantity = 1
        quantity_value = _parse_number(quantity)
        if quantity_value is None or quantity_value < 1 or quantity_value != int(quantity_value):
            return None, False

        price_raw = raw.get("price", raw.get("unit_price", raw.get("unitPrice")))
        price = _parse_number(price_raw)
        if price_raw is None:
            priced = False
            price = 0.0
        elif price is None or price < 0:
            return None, False

        items.append(OrderItem(
            name=str(raw.get("name") or UNKNOWN_ITEM_NAME),
            quantity=int(quantity_value),
            unit_price=price,
        ))

    return items, priced


def _project_customer(raw: Dict[str, Any]) -> Customer:
    joined = raw.get("customers") or raw.get("customer")
    if isinstance(joined, list):
        joined = joined[0] if joined else None

    if not isinstance(joined, dict):
        return Customer(customer_id=raw.get("customer_id"))

    return Customer(
        name=joined.get("name") or GUEST_NAME,
        phone=joined.get("phone") or "",
        email=joined.get("email") or None,
        customer_id=joined.get("id") or raw.get("customer_id"),
    )


# ============================================================================
# PROJECTION
# ============================================================================

def project(raw: Dict[str, Any]) -> Order:
    """
    Build an Order from a raw order store record.

    Args:
        raw: Record as returned by the order store

    Returns:
        Best-effort Order with diagnostics
    """
    diagnostics: List[str] = []

    if not isinstance(raw, dict):
        raw = {}
        diagnostics.append("record_malformed")

    order_id = raw.get("id")
    if order_id is None or str(order_id) == "":
        diagnostics.append("id_missing")
        order_id = ""

    # Status
    raw_status = raw.get("status")
    status = normalize_status(raw_status)
    if status is None:
        diagnostics.append("status_missing" if raw_status in (None, "") else "status_unrecognized")
        status = OrderStatus.NEW

    # Items
    items, priced = parse_items(raw.get("items"))
    items_unparseable = items is None
    if items_unparseable:
        diagnostics.append("items_unparseable")
        items = []
    elif not priced:
        diagnostics.append("item_price_missing")

    # Total
    persisted_total = _parse_number(raw.get("total_amount"))
    recomputable = bool(items) and priced
    computed_total = round(sum(item.quantity * item.unit_price for item in items), 2)

    if recomputable and (
        persisted_total is None
        or abs(persisted_total - computed_total) > TOTAL_TOLERANCE
    ):
        if persisted_total is not None:
            diagnostics.append("total_recomputed")
        total_amount = computed_total
    elif persisted_total is not None:
        total_amount = persisted_total
    else:
        diagnostics.append("total_missing")
        total_amount = 0.0

    # Timestamps
    created_at = parse_timestamp(raw.get("created_at"))
    if raw.get("created_at") is not None and created_at is None:
        diagnostics.append("created_at_unparseable")
    updated_at = parse_timestamp(raw.get("updated_at")) or created_at

    for diagnostic in diagnostics:
        projection_diagnostics.labels(diagnostic=diagnostic).inc()

    if diagnostics:
        logger.debug(
            "Order projected with diagnostics",
            extra={"order_id": order_id, "diagnostics": diagnostics}
        )

    return Order(
        id=str(order_id),
        status=status,
        customer=_project_customer(raw),
        items=tuple(items),
        total_amount=total_amount,
        created_at=created_at,
        updated_at=updated_at,
        pickup_time=raw.get("pickup_time"),
        items_unparseable=items_unparseable,
        diagnostics=tuple(diagnostics),
    )
