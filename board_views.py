"""
Board Views
===========
Observers that turn board snapshots into what screens show.

- group_by_column: staff kanban columns (by visible, optimistic status)
- StatusCounters: per-status counts for header badges
- ReadyBoard: public "ready for pickup" list (authoritative status only)
- ReadyAnnouncer: fires a callback when the store confirms an order ready
  (sound/visual chime hook)

Each observer holds no reference to the cache, only its own derived view.
"""

import logging
from collections import Counter as CountMap
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from order_status import BOARD_COLUMNS, OrderStatus
from projection import Order
from subscription_hub import Unsubscribe


logger = logging.getLogger(__name__)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _oldest_first(order: Order) -> datetime:
    return order.created_at or _EPOCH


def group_by_column(snapshot: Sequence[Order]) -> Dict[OrderStatus, List[Order]]:
    """
    Group orders into the staff board columns.

    Orders are placed by ``visible_status`` so an optimistic move shows in
    its target column at once. Terminal orders are not on the board.
    """
    columns: Dict[OrderStatus, List[Order]] = {status: [] for status in BOARD_COLUMNS}
    for order in snapshot:
        column = columns.get(order.visible_status)
        if column is not None:
            column.append(order)
    return columns


class _BoardObserver:
    """Attach/detach plumbing shared by the observers."""

    def __init__(self):
        self._unsubscribe: Optional[Unsubscribe] = None

    def attach(self, board) -> "_BoardObserver":
        """Subscribe to a board (anything with ``subscribe``)."""
        self.detach()
        self._unsubscribe = board.subscribe(self.update)
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def update(self, snapshot: Sequence[Order]) -> None:
        raise NotImplementedError


class StatusCounters(_BoardObserver):
    """Order counts per visible status."""

    def __init__(self):
        super().__init__()
        self.counts: Dict[OrderStatus, int] = {status: 0 for status in OrderStatus}
        self.pending = 0

    def update(self, snapshot: Sequence[Order]) -> None:
        tally = CountMap(order.visible_status for order in snapshot)
        self.counts = {status: tally.get(status, 0) for status in OrderStatus}
        self.pending = sum(1 for order in snapshot if order.is_pending)

    @property
    def open_orders(self) -> int:
        return sum(self.counts[status] for status in BOARD_COLUMNS)

    def to_dict(self) -> Dict[str, int]:
        data = {status.value: count for status, count in self.counts.items()}
        data["open"] = self.open_orders
        data["pending"] = self.pending
        return data


class ReadyBoard(_BoardObserver):
    """
    Public pickup board: orders the store has confirmed as Ready, oldest
    first. Optimistic moves are not shown to customers.
    """

    def __init__(self):
        super().__init__()
        self.orders: List[Order] = []

    def update(self, snapshot: Sequence[Order]) -> None:
        ready = [order for order in snapshot if order.status == OrderStatus.READY]
        self.orders = sorted(ready, key=_oldest_first)

    @property
    def order_numbers(self) -> List[str]:
        return [order.order_number for order in self.orders]

    def to_dict(self) -> Dict[str, object]:
        return {
            "count": len(self.orders),
            "orders": [
                {
                    "id": order.id,
                    "order_number": order.order_number,
                    "customer_name": order.customer.name,
                    "item_lines": order.item_lines,
                    "created_at": order.created_at.isoformat() if order.created_at else None,
                    "pickup_time": order.pickup_time,
                }
                for order in self.orders
            ],
        }


class ReadyAnnouncer(_BoardObserver):
    """
    Calls ``on_ready`` once for each order the store confirms as Ready.
    Optimistic moves do not chime, so a rejected move followed by a retry
    announces the order only once.

    The first snapshot only primes the known set, so orders that were
    already ready when the board opened do not chime.
    """

    def __init__(self, on_ready: Callable[[Order], None]):
        super().__init__()
        self._on_ready = on_ready
        self._ready_ids: Set[str] = set()
        self._primed = False

    def update(self, snapshot: Sequence[Order]) -> None:
        ready = {
            order.id: order for order in snapshot
            if order.status == OrderStatus.READY
        }

        if self._primed:
            for order_id, order in ready.items():
                if order_id not in self._ready_ids:
                    logger.info(
                        f"Order {order.order_number} is now ready",
                        extra={"order_id": order_id}
                    )
                    self._on_ready(order)

        self._ready_ids = set(ready)
        self._primed = True
