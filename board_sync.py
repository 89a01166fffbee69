"""
Order Board Synchronization
===========================
Central orchestration for one board client.

Responsibilities:
- Periodically refresh the cache from the order store (with backoff)
- Initiate staff transitions: validate, apply optimistically, confirm
- Bound confirmation requests with a timeout and revert on failure
- Surface errors to observers and keep the audit trail
- NO rendering, transport, or storage details

Concurrency model:
- Everything runs on one asyncio event loop
- The refresh fetch and confirmation requests are the only awaits;
  every cache mutation happens synchronously between them
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog
from prometheus_client import Counter

from audit import AuditEntry, AuditKind, AuditTrail
from errors import (
    BoardError,
    ConfirmationFailed,
    ConflictBusy,
    InvalidOrder,
    InvalidTransition,
    OrderNotFound,
    ProjectionDegraded,
    RefreshFailed,
    StoreError,
    TransitionStuck,
)
from order_cache import OrderCache, ReconcileReport
from order_status import OrderStatus, normalize_status
from order_store import InMemoryOrderStore, OrderStore, SupabaseOrderStore
from projection import Order, project
from subscription_hub import ErrorCallback, SnapshotCallback, Unsubscribe

# Structured logging
logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

transition_requests = Counter(
    'order_transition_requests_total',
    'Transition requests by outcome',
    ['outcome']
)
refresh_results = Counter(
    'order_board_refreshes_total',
    'Board refreshes by result',
    ['result']
)


EDITABLE_FIELDS = frozenset({"status", "items", "total_amount", "pickup_time", "customer"})
MAX_BACKOFF_EXPONENT = 16


@dataclass(frozen=True)
class TransitionResult:
    """Answer to a transition request."""
    accepted: bool
    order_id: str
    target: Optional[OrderStatus]
    reason: Optional[str] = None
    error: Optional[BoardError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "order_id": self.order_id,
            "target": self.target.value if self.target else None,
            "reason": self.reason,
            "error": self.error.to_dict() if self.error else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_items(items: Any) -> List[Dict[str, Any]]:
    """
    Validate order items for placement or edit.

    Returns:
        Items normalized to ``{name, quantity, price}``

    Raises:
        InvalidOrder: Empty list or an invalid line
    """
    if not isinstance(items, list) or not items:
        raise InvalidOrder("Order must contain at least one item")

    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise InvalidOrder(f"Item {index} is not an object")

        name = str(item.get("name") or "").strip()
        quantity = item.get("quantity", 1)
        price = item.get("price", item.get("unit_price"))

        if not name:
            raise InvalidOrder(f"Item {index} has no name")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidOrder(f"Item {index} quantity must be an integer >= 1")
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            raise InvalidOrder(f"Item {index} price must be a number >= 0")

        normalized.append({"name": name, "quantity": quantity, "price": float(price)})

    return normalized


class OrderBoard:
    """
    Board service for one staff client.

    Lifecycle: construct, ``await init()``, use, ``await dispose()``.
    The cache, hub and audit trail belong to this instance only.
    """

    def __init__(
        self,
        store: OrderStore,
        refresh_interval: float = 15.0,
        fetch_timeout: float = 10.0,
        confirm_timeout: float = 10.0,
        max_refresh_backoff: float = 120.0,
        stuck_refresh_limit: int = 2,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.refresh_interval = refresh_interval
        self.fetch_timeout = fetch_timeout
        self.confirm_timeout = confirm_timeout
        self.max_refresh_backoff = max(max_refresh_backoff, refresh_interval)
        self._clock = clock or _utcnow

        # Core components
        self.cache = OrderCache(stuck_refresh_limit=stuck_refresh_limit, clock=self._clock)
        self.audit = AuditTrail()

        # Background work
        self._refresh_task: Optional[asyncio.Task] = None
        self._confirmations: Dict[str, asyncio.Task] = {}
        self._running = False

        # Health
        self.consecutive_refresh_failures = 0
        self.last_refresh_at: Optional[datetime] = None
        self.last_error: Optional[BoardError] = None
        self._degraded_ids: Set[str] = set()

        logger.info(
            "order_board_created",
            refresh_interval=refresh_interval,
            confirm_timeout=confirm_timeout,
            stuck_refresh_limit=stuck_refresh_limit
        )

    @classmethod
    def from_config(cls, config) -> "OrderBoard":
        """Build a board from a loaded ``config.Config``."""
        if config.store.backend == "memory":
            store = InMemoryOrderStore()
        else:
            store = SupabaseOrderStore.from_credentials(
                config.supabase.url,
                config.supabase.key,
                call_timeout=config.store.call_timeout
            )

        return cls(
            store,
            refresh_interval=config.sync.refresh_interval,
            fetch_timeout=config.sync.fetch_timeout,
            confirm_timeout=config.sync.confirm_timeout,
            max_refresh_backoff=config.sync.max_refresh_backoff,
            stuck_refresh_limit=config.sync.stuck_refresh_limit
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    async def init(self) -> None:
        """Load the board once and start the refresh loop."""
        if self._running:
            logger.warning("order_board_already_running")
            return

        self._running = True
        await self.refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info("order_board_started", orders=len(self.cache))

    async def dispose(self) -> None:
        """Stop background work and drop all observers."""
        self._running = False

        tasks = list(self._confirmations.values())
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)

        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._refresh_task = None
        self._confirmations.clear()
        self.cache.hub.dispose()
        logger.info("order_board_disposed")

    # ========================================================================
    # READS & SUBSCRIPTIONS
    # ========================================================================

    def subscribe(self, callback: SnapshotCallback) -> Unsubscribe:
        return self.cache.hub.subscribe(callback)

    def subscribe_errors(self, callback: ErrorCallback) -> Unsubscribe:
        return self.cache.hub.subscribe_errors(callback)

    def snapshot(self) -> Tuple[Order, ...]:
        return self.cache.snapshot()

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.cache.get_order(order_id)

    def find_by_display_number(self, number: str) -> List[Order]:
        return self.cache.find_by_display_number(number)

    def search_orders(self, query: Optional[str] = None, status: Any = None) -> List[Order]:
        """
        Substring search on order number with an optional status filter.

        ``status`` accepts any known spelling; empty or ``"All"`` disables
        the filter.

        Raises:
            InvalidOrder: Unknown status filter
        """
        status_filter = None
        if status not in (None, "") and str(status).strip().lower() != "all":
            status_filter = normalize_status(status)
            if status_filter is None:
                raise InvalidOrder(f"Unknown status filter: {status}")
        return self.cache.search(query, status_filter)

    # ========================================================================
    # REFRESH
    # ========================================================================

    def next_refresh_delay(self) -> float:
        """Refresh interval, doubled per consecutive failure up to the cap."""
        if self.consecutive_refresh_failures == 0:
            return self.refresh_interval
        exponent = min(self.consecutive_refresh_failures, MAX_BACKOFF_EXPONENT)
        delay = self.refresh_interval * (2 ** exponent)
        return min(delay, self.max_refresh_backoff)

    async def refresh(self) -> bool:
        """
        Fetch all orders and reconcile them into the cache.

        A failed fetch leaves the cache untouched and surfaces RefreshFailed.

        Returns:
            True if the cache was refreshed
        """
        try:
            records = await asyncio.wait_for(
                self.store.fetch_all_orders(),
                timeout=self.fetch_timeout
            )
        except (StoreError, asyncio.TimeoutError) as e:
            self.consecutive_refresh_failures += 1
            refresh_results.labels(result='failed').inc()
            reason = str(e) or "timed out"
            logger.warning(
                "refresh_failed",
                error=reason,
                consecutive_failures=self.consecutive_refresh_failures,
                next_delay=self.next_refresh_delay()
            )
            self._surface(RefreshFailed(f"Could not refresh orders: {reason}"))
            return False

        orders = [project(record) for record in records]
        report = self.cache.replace_all(orders)

        self.consecutive_refresh_failures = 0
        self.last_refresh_at = self._clock()
        refresh_results.labels(result='ok').inc()

        self._surface_forced(report)
        self._surface_degraded(orders)

        logger.debug(
            "refresh_complete",
            orders=len(orders),
            confirmed=len(report.confirmed),
            held=len(report.held),
            forced=len(report.forced)
        )
        return True

    async def _refresh_loop(self) -> None:
        """Background loop; keeps its schedule whatever a refresh does."""
        while self._running:
            await asyncio.sleep(self.next_refresh_delay())
            try:
                await self.refresh()
            except Exception as e:
                logger.exception("refresh_loop_error", error=str(e))

    def _surface_forced(self, report: ReconcileReport) -> None:
        for forced in report.forced:
            self._surface(TransitionStuck(
                f"Move to {forced.attempted.value} was not confirmed; "
                f"order is {forced.authoritative.value}",
                order_id=forced.order_id
            ))

    def _surface_degraded(self, orders: List[Order]) -> None:
        degraded = {order.id for order in orders if order.items_unparseable}
        for order_id in sorted(degraded - self._degraded_ids):
            self._surface(ProjectionDegraded(
                f"Items for order #{order_id[:8]} could not be read",
                order_id=order_id
            ))
        self._degraded_ids = degraded

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def start_transition(self, order_id: str, target: Any) -> TransitionResult:
        """
        Validate and optimistically apply a transition; confirm in background.

        Suitable for drag/drop callbacks that must not await. The returned
        result says whether the move was accepted for confirmation.
        """
        result, _ = self._begin_transition(order_id, target)
        return result

    async def request_transition(self, order_id: str, target: Any) -> TransitionResult:
        """
        Move an order to ``target`` and wait for the store to confirm.

        Args:
            order_id: Order identifier
            target: OrderStatus or any known status spelling

        Returns:
            TransitionResult; accepted is False for invalid, busy or failed moves
        """
        result, task = self._begin_transition(order_id, target)
        if task is None:
            return result
        return await task

    def _begin_transition(
        self,
        order_id: str,
        target: Any
    ) -> Tuple[TransitionResult, Optional[asyncio.Task]]:
        target_status = normalize_status(target)

        logger.info(
            "transition_requested",
            order_id=order_id,
            target=target_status.value if target_status else str(target)
        )

        try:
            if target_status is None:
                raise InvalidTransition(f"Unknown status: {target}", order_id=order_id)
            order = self.cache.get_order(order_id)
            previous = order.status if order else None
            self.cache.apply_optimistic(order_id, target_status)
        except (InvalidTransition, ConflictBusy, OrderNotFound) as e:
            transition_requests.labels(outcome=e.code).inc()
            logger.info("transition_rejected", order_id=order_id, reason=e.code, error=e.message)
            return TransitionResult(False, order_id, target_status, reason=e.code, error=e), None

        task = asyncio.get_running_loop().create_task(
            self._confirm_transition(order_id, previous, target_status)
        )
        self._confirmations[order_id] = task
        task.add_done_callback(lambda t: self._forget_confirmation(order_id, t))

        return TransitionResult(True, order_id, target_status, reason="pending"), task

    def _forget_confirmation(self, order_id: str, task: asyncio.Task) -> None:
        if self._confirmations.get(order_id) is task:
            del self._confirmations[order_id]

    async def _confirm_transition(
        self,
        order_id: str,
        previous: OrderStatus,
        target: OrderStatus
    ) -> TransitionResult:
        """Send the confirmation request; confirm or reject the cache."""
        try:
            record = await asyncio.wait_for(
                self.store.update_order_status(
                    order_id,
                    target.store_value,
                    expected_status=previous.store_value
                ),
                timeout=self.confirm_timeout
            )
        except asyncio.TimeoutError:
            return self._fail_transition(
                order_id, target, f"no answer within {self.confirm_timeout:g}s"
            )
        except StoreError as e:
            return self._fail_transition(order_id, target, e.message)
        except Exception as e:
            logger.exception("confirmation_error", order_id=order_id, error=str(e))
            return self._fail_transition(order_id, target, str(e))

        reported = normalize_status(record.get("status")) if isinstance(record, dict) else None
        if reported is not None and reported != target:
            return self._fail_transition(
                order_id, target, f"store reports {reported.value}"
            )

        self.cache.confirm(order_id, target, confirmed_at=self._clock())
        self.audit.record(AuditEntry(
            kind=AuditKind.TRANSITION,
            order_id=order_id,
            actor="board",
            from_status=previous.value,
            to_status=target.value,
            fields=("status",)
        ))

        transition_requests.labels(outcome='confirmed').inc()
        logger.info("transition_confirmed", order_id=order_id, status=target.value)
        return TransitionResult(True, order_id, target, reason="confirmed")

    def _fail_transition(
        self,
        order_id: str,
        target: OrderStatus,
        reason: str
    ) -> TransitionResult:
        self.cache.reject(order_id)

        error = ConfirmationFailed(
            f"Could not move order to {target.value}: {reason}",
            order_id=order_id
        )
        self._surface(error)

        transition_requests.labels(outcome=error.code).inc()
        logger.warning("transition_failed", order_id=order_id, target=target.value, reason=reason)
        return TransitionResult(False, order_id, target, reason=error.code, error=error)

    # ========================================================================
    # ADMIN EDIT & PLACEMENT
    # ========================================================================

    async def edit_order(
        self,
        order_id: str,
        changes: Dict[str, Any],
        actor: str = "staff"
    ) -> Order:
        """
        Full-record edit by staff; bypasses the transition validator.

        Status changes made here are audited as admin overrides.

        Raises:
            OrderNotFound: Unknown order
            ConflictBusy: Order has a transition awaiting confirmation
            InvalidOrder: Unknown field or invalid value
            StoreError: Store rejected the edit
        """
        order = self.cache.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        if order.is_pending:
            raise ConflictBusy(
                f"Order {order.order_number} has a move in progress",
                order_id=order_id
            )

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise InvalidOrder(f"Cannot edit fields: {', '.join(sorted(unknown))}", order_id=order_id)

        fields: Dict[str, Any] = {}
        new_status = order.status

        if "status" in changes:
            new_status = normalize_status(changes["status"])
            if new_status is None:
                raise InvalidOrder(f"Unknown status: {changes['status']}", order_id=order_id)
            fields["status"] = new_status.store_value

        if "items" in changes:
            fields["items"] = validate_items(changes["items"])
            fields["total_amount"] = round(
                sum(i["quantity"] * i["price"] for i in fields["items"]), 2
            )
        elif "total_amount" in changes:
            total = changes["total_amount"]
            if isinstance(total, bool) or not isinstance(total, (int, float)) or total < 0:
                raise InvalidOrder("total_amount must be a number >= 0", order_id=order_id)
            fields["total_amount"] = total

        if "pickup_time" in changes:
            fields["pickup_time"] = changes["pickup_time"]

        if "customer" in changes:
            customer = await self._upsert_customer(changes["customer"])
            fields["customer_id"] = customer["id"]

        try:
            await asyncio.wait_for(
                self.store.update_order(order_id, fields),
                timeout=self.confirm_timeout
            )
        except asyncio.TimeoutError:
            raise StoreError(f"Order store timed out editing {order_id}", order_id=order_id)

        status_changed = new_status != order.status
        self.audit.record(AuditEntry(
            kind=AuditKind.ADMIN_OVERRIDE if status_changed else AuditKind.ADMIN_EDIT,
            order_id=order_id,
            actor=actor,
            from_status=order.status.value,
            to_status=new_status.value,
            fields=tuple(sorted(fields))
        ))

        await self.refresh()
        return self.cache.get_order(order_id) or order

    async def place_order(self, customer: Dict[str, Any], items: Any) -> Order:
        """
        Create a customer (or update by phone) and a new order in status New.

        Raises:
            InvalidOrder: Missing customer details or invalid items
            StoreError: Store rejected the write
        """
        normalized = validate_items(items)
        customer_record = await self._upsert_customer(customer)

        total = round(sum(i["quantity"] * i["price"] for i in normalized), 2)
        record = await self.store.create_order(
            customer_record.get("id"),
            normalized,
            total,
            status=OrderStatus.NEW.store_value
        )

        logger.info("order_placed", order_id=str(record.get("id")), total=total)

        await self.refresh()
        return self.cache.get_order(str(record.get("id"))) or project(record)

    async def _upsert_customer(self, customer: Any) -> Dict[str, Any]:
        if not isinstance(customer, dict):
            raise InvalidOrder("Customer details required")

        name = str(customer.get("name") or "").strip()
        phone = str(customer.get("phone") or "").strip()
        if not name or not phone:
            raise InvalidOrder("Name and phone are required")

        return await self.store.create_or_update_customer(
            name, phone, customer.get("email") or None
        )

    # ========================================================================
    # ERRORS & STATS
    # ========================================================================

    def _surface(self, error: BoardError) -> None:
        self.last_error = error
        self.cache.hub.publish_error(error)

    def get_stats(self) -> Dict[str, Any]:
        """Board health summary."""
        return {
            "running": self._running,
            "orders": len(self.cache),
            "pending_transitions": len(self.cache.pending_ids()),
            "in_flight_confirmations": len(self._confirmations),
            "consecutive_refresh_failures": self.consecutive_refresh_failures,
            "last_refresh_at": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "subscribers": self.cache.hub.subscriber_count,
        }
