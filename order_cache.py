"""
Order Cache
===========
Client-side mapping of order id -> Order, the single shared mutable
resource of the board.

Each order is either settled (``pending_transition is None``) or pending
(an optimistic target awaiting confirmation). Only four operations mutate
the cache and every one of them ends in a hub notification:

- replace_all       full refresh, reconciled against pending transitions
- apply_optimistic  settled -> pending
- confirm           pending -> settled(target)
- reject            pending -> settled(previous status)

Reconciliation rules for an incoming authoritative order:
1. No pending transition locally: incoming record wins.
2. Pending transition equals incoming status: confirmed by the refresh.
3. Pending transition differs: keep local status and pending transition,
   adopt every other field. After ``stuck_refresh_limit`` consecutive
   rule-3 outcomes the order is force-resolved to the incoming status.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter, Gauge

from errors import ConflictBusy, InvalidTransition, OrderNotFound
from order_status import OrderStatus, is_valid_transition
from projection import Order
from subscription_hub import SubscriptionHub


logger = logging.getLogger(__name__)


DEFAULT_STUCK_REFRESH_LIMIT = 2


# ============================================================================
# METRICS
# ============================================================================

cache_reconciliations = Counter(
    'order_cache_reconciliations_total',
    'Reconciliation outcomes per incoming order',
    ['outcome']
)
cache_mutations = Counter(
    'order_cache_mutations_total',
    'Order cache mutations',
    ['operation']
)
orders_cached = Gauge(
    'orders_cached',
    'Orders currently held in the cache'
)


# ============================================================================
# RECONCILIATION REPORT
# ============================================================================

@dataclass
class ForcedResolution:
    """Pending transition abandoned after repeated contradiction."""
    order_id: str
    attempted: OrderStatus
    authoritative: OrderStatus


@dataclass
class ReconcileReport:
    """Outcome of one replace_all call."""
    adopted: List[str] = field(default_factory=list)
    confirmed: List[str] = field(default_factory=list)
    held: List[str] = field(default_factory=list)
    forced: List[ForcedResolution] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ORDER CACHE
# ============================================================================

class OrderCache:
    """In-memory board state with optimistic transitions."""

    def __init__(
        self,
        stuck_refresh_limit: int = DEFAULT_STUCK_REFRESH_LIMIT,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if stuck_refresh_limit < 1:
            raise ValueError("stuck_refresh_limit must be at least 1")

        self._orders: Dict[str, Order] = {}
        self._held_cycles: Dict[str, int] = {}
        self.stuck_refresh_limit = stuck_refresh_limit
        self._clock = clock or _utcnow
        self.hub = SubscriptionHub(self.snapshot)

    # ========================================================================
    # READS
    # ========================================================================

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def snapshot(self) -> Tuple[Order, ...]:
        """Current orders, in the order the store returned them."""
        return tuple(self._orders.values())

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def find_by_display_number(self, number: str) -> List[Order]:
        """
        Look up orders by their short display number.

        Accepts ``#1a2b3c4d`` or ``1a2b3c4d``, case-insensitively.
        """
        key = (number or "").strip().lstrip("#").lower()
        if not key:
            return []
        return [
            order for order in self._orders.values()
            if order.display_number.lower() == key
        ]

    def search(
        self,
        query: Optional[str] = None,
        status: Optional[OrderStatus] = None
    ) -> List[Order]:
        """
        Admin table filter: order number contains ``query`` (case-insensitive,
        leading ``#`` ignored) and authoritative status equals ``status``.
        Either filter may be omitted.
        """
        key = (query or "").strip().lstrip("#").lower()
        return [
            order for order in self._orders.values()
            if key in order.display_number.lower()
            and (status is None or order.status == status)
        ]

    def pending_ids(self) -> List[str]:
        return [oid for oid, order in self._orders.items() if order.is_pending]

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def replace_all(self, orders: Iterable[Order]) -> ReconcileReport:
        """
        Merge a full authoritative refresh into the cache.

        Args:
            orders: Projected orders from the order store

        Returns:
            ReconcileReport describing what happened per order
        """
        report = ReconcileReport()
        merged: Dict[str, Order] = {}
        held_cycles: Dict[str, int] = {}

        for incoming in orders:
            if not incoming.id:
                logger.warning("Skipping order without id during refresh")
                continue

            incoming = replace(incoming, pending_transition=None)
            local = self._orders.get(incoming.id)
            pending = local.pending_transition if local else None

            if pending is None:
                merged[incoming.id] = incoming
                report.adopted.append(incoming.id)
                cache_reconciliations.labels(outcome='adopted').inc()
                continue

            if pending == incoming.status:
                merged[incoming.id] = incoming
                report.confirmed.append(incoming.id)
                cache_reconciliations.labels(outcome='confirmed').inc()
                continue

            cycles = self._held_cycles.get(incoming.id, 0) + 1
            if cycles >= self.stuck_refresh_limit:
                merged[incoming.id] = incoming
                report.forced.append(ForcedResolution(
                    order_id=incoming.id,
                    attempted=pending,
                    authoritative=incoming.status
                ))
                cache_reconciliations.labels(outcome='forced').inc()
                logger.warning(
                    f"Pending transition stuck, forcing {incoming.status.value}",
                    extra={
                        "order_id": incoming.id,
                        "attempted": pending.value,
                        "authoritative": incoming.status.value,
                        "cycles": cycles
                    }
                )
                continue

            merged[incoming.id] = replace(
                incoming,
                status=local.status,
                pending_transition=pending
            )
            held_cycles[incoming.id] = cycles
            report.held.append(incoming.id)
            cache_reconciliations.labels(outcome='held').inc()

        report.dropped = [oid for oid in self._orders if oid not in merged]

        self._orders = merged
        self._held_cycles = held_cycles
        orders_cached.set(len(merged))
        self._notify("replace_all")

        logger.debug(
            "Cache reconciled",
            extra={
                "adopted": len(report.adopted),
                "confirmed": len(report.confirmed),
                "held": len(report.held),
                "forced": len(report.forced),
                "dropped": len(report.dropped)
            }
        )
        return report

    def apply_optimistic(self, order_id: str, target: OrderStatus) -> Order:
        """
        Show ``target`` immediately while the store confirms it.

        Raises:
            OrderNotFound: Unknown order id
            ConflictBusy: A transition is already pending for this order
            InvalidTransition: target is not reachable from the current status
        """
        order = self._require(order_id)

        if order.is_pending:
            raise ConflictBusy(
                f"Order {order.order_number} already moving to "
                f"{order.pending_transition.value}",
                order_id=order_id
            )

        if not is_valid_transition(order.status, target):
            raise InvalidTransition(
                f"Cannot move order {order.order_number} from "
                f"{order.status.value} to {target.value}",
                order_id=order_id
            )

        updated = order.with_pending(target)
        self._orders[order_id] = updated
        self._held_cycles.pop(order_id, None)
        self._notify("apply_optimistic")
        return updated

    def confirm(
        self,
        order_id: str,
        target: OrderStatus,
        confirmed_at: Optional[datetime] = None
    ) -> bool:
        """
        Settle a pending transition as confirmed by the store.

        Confirming a status the order already has settled is a no-op, and a
        confirmation that no longer matches the pending target (late
        success after timeout, or superseded by a refresh) is discarded.

        Returns:
            True if the cache changed
        """
        order = self._orders.get(order_id)
        if order is None:
            logger.info("Confirmation for unknown order discarded", extra={"order_id": order_id})
            return False

        if order.pending_transition != target:
            if not order.is_pending and order.status == target:
                return False
            logger.info(
                "Stale confirmation discarded",
                extra={
                    "order_id": order_id,
                    "target": target.value,
                    "status": order.status.value,
                    "pending": order.pending_transition.value if order.pending_transition else None
                }
            )
            return False

        self._orders[order_id] = order.settled(target, confirmed_at or self._clock())
        self._held_cycles.pop(order_id, None)
        self._notify("confirm")
        return True

    def reject(self, order_id: str) -> bool:
        """
        Revert a pending transition to the last known status.

        Returns:
            True if the cache changed
        """
        order = self._orders.get(order_id)
        if order is None or not order.is_pending:
            return False

        self._orders[order_id] = replace(order, pending_transition=None)
        self._held_cycles.pop(order_id, None)
        self._notify("reject")
        return True

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    def _notify(self, operation: str) -> None:
        cache_mutations.labels(operation=operation).inc()
        self.hub.publish(self.snapshot())
