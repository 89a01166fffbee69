"""
Order Store
===========
Async access to the authoritative order collection.

Two implementations share the OrderStore protocol:
- SupabaseOrderStore: hosted Postgres via Supabase (``orders`` and
  ``customers`` tables), blocking client calls run in the default executor
- InMemoryOrderStore: process-local store for development and tests

Status updates are idempotent: writing the same status twice leaves the
record in the same state. Board transitions pass the status they expect to
replace, so a write never lands over a status another client already set.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from postgrest.exceptions import APIError
from supabase import Client, create_client

from errors import RecordNotFound, StatusConflict, StoreError, StoreUnavailable


logger = logging.getLogger(__name__)


RawOrderRecord = Dict[str, Any]
CustomerRecord = Dict[str, Any]

ORDERS_TABLE = "orders"
CUSTOMERS_TABLE = "customers"
ORDER_SELECT = "*, customers (id, name, phone, email)"

CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
DEFAULT_CALL_TIMEOUT = 10.0  # seconds


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderStore(Protocol):
    """Interface consumed by the board."""

    async def fetch_all_orders(self) -> List[RawOrderRecord]:
        ...

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        expected_status: Optional[str] = None
    ) -> RawOrderRecord:
        ...

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> RawOrderRecord:
        ...

    async def create_order(
        self,
        customer_id: Optional[str],
        items: List[Dict[str, Any]],
        total_amount: float,
        status: str = "pending"
    ) -> RawOrderRecord:
        ...

    async def create_or_update_customer(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None
    ) -> CustomerRecord:
        ...


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for order store calls."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: float = CIRCUIT_BREAKER_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0
        if self.state != CircuitState.CLOSED:
            self.state = CircuitState.CLOSED
            logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.error(f"Circuit breaker opened (failures: {self.failure_count})")

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (self._clock() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test request
        return True


# ============================================================================
# SUPABASE STORE
# ============================================================================

class SupabaseOrderStore:
    """
    Order store backed by Supabase.

    Mirrors the board's REST routes: orders are read newest first with the
    customer row joined in, items are persisted as a JSON string.
    """

    def __init__(
        self,
        client: Client,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.client = client
        self.call_timeout = call_timeout
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

    @classmethod
    def from_credentials(cls, url: str, key: str, call_timeout: float = DEFAULT_CALL_TIMEOUT):
        """Create store with a fresh Supabase client."""
        client = create_client(url, key)
        logger.info("Supabase client initialized")
        return cls(client, call_timeout=call_timeout)

    async def _execute(self, operation: str, query: Callable[[], Any]) -> Any:
        """
        Run a blocking Supabase query with timeout and circuit breaker.

        Raises:
            StoreUnavailable: Circuit breaker open
            StoreError: Query failed or timed out
        """
        if not self.circuit_breaker.can_execute():
            raise StoreUnavailable(f"Order store unavailable ({operation}): circuit open")

        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, query),
                timeout=self.call_timeout
            )
        except asyncio.TimeoutError:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            logger.error(f"Order store timeout: {operation}")
            raise StoreError(f"Order store timed out ({operation})")
        except APIError as e:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            logger.error(f"Order store error ({operation}): {e.message}")
            raise StoreError(f"Order store rejected {operation}: {e.message}")
        except Exception as e:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            logger.error(f"Order store call failed ({operation}): {str(e)}")
            raise StoreError(f"Order store call failed ({operation}): {str(e)}") from e

        self.circuit_breaker.record_success()
        return result

    async def fetch_all_orders(self) -> List[RawOrderRecord]:
        result = await self._execute(
            "fetch_all_orders",
            lambda: self.client
                .table(ORDERS_TABLE)
                .select(ORDER_SELECT)
                .order("created_at", desc=True)
                .execute()
        )
        self.read_count += 1
        return list(result.data or [])

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        expected_status: Optional[str] = None
    ) -> RawOrderRecord:
        """
        Write a new status, optionally only over ``expected_status``.

        A conditional write that matches no row is resolved by reading the
        current status: already at ``status`` counts as success.

        Raises:
            RecordNotFound: No order with this id
            StatusConflict: Order is in another status
        """
        if expected_status is None:
            return await self.update_order(order_id, {"status": status})

        data = {"status": status, "updated_at": _utcnow_iso()}
        result = await self._execute(
            "update_order_status",
            lambda: self.client
                .table(ORDERS_TABLE)
                .update(data)
                .eq("id", order_id)
                .eq("status", expected_status)
                .execute()
        )
        self.write_count += 1

        if result.data:
            return result.data[0]

        current = await self._execute(
            "read_order_status",
            lambda: self.client
                .table(ORDERS_TABLE)
                .select("id, status")
                .eq("id", order_id)
                .limit(1)
                .execute()
        )
        self.read_count += 1

        if not current.data:
            raise RecordNotFound(f"Order {order_id} not found", order_id=order_id)
        if current.data[0].get("status") == status:
            return current.data[0]
        raise StatusConflict(
            f"Order {order_id} is {current.data[0].get('status')}, expected {expected_status}",
            order_id=order_id
        )

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> RawOrderRecord:
        data = dict(fields)
        if isinstance(data.get("items"), list):
            data["items"] = json.dumps(data["items"])
        data["updated_at"] = _utcnow_iso()

        result = await self._execute(
            "update_order",
            lambda: self.client
                .table(ORDERS_TABLE)
                .update(data)
                .eq("id", order_id)
                .execute()
        )
        self.write_count += 1

        if not result.data:
            raise RecordNotFound(f"Order {order_id} not found", order_id=order_id)
        return result.data[0]

    async def create_order(
        self,
        customer_id: Optional[str],
        items: List[Dict[str, Any]],
        total_amount: float,
        status: str = "pending"
    ) -> RawOrderRecord:
        row = {
            "customer_id": customer_id,
            "items": json.dumps(items),
            "total_amount": total_amount,
            "status": status,
            "created_at": _utcnow_iso(),
        }
        result = await self._execute(
            "create_order",
            lambda: self.client.table(ORDERS_TABLE).insert(row).execute()
        )
        self.write_count += 1
        return result.data[0]

    async def create_or_update_customer(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None
    ) -> CustomerRecord:
        existing = await self._execute(
            "find_customer",
            lambda: self.client
                .table(CUSTOMERS_TABLE)
                .select("*")
                .eq("phone", phone)
                .limit(1)
                .execute()
        )

        if existing.data:
            customer_id = existing.data[0]["id"]
            result = await self._execute(
                "update_customer",
                lambda: self.client
                    .table(CUSTOMERS_TABLE)
                    .update({"name": name, "email": email})
                    .eq("id", customer_id)
                    .execute()
            )
        else:
            result = await self._execute(
                "create_customer",
                lambda: self.client
                    .table(CUSTOMERS_TABLE)
                    .insert({"name": name, "phone": phone, "email": email})
                    .execute()
            )

        self.write_count += 1
        return result.data[0]

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.state.value,
            "circuit_failures": self.circuit_breaker.failure_count,
        }


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class InMemoryOrderStore:
    """
    Process-local order store.

    Records are kept in the same raw shape Supabase returns (items as a
    JSON string, customer joined under ``customers``) so the projection
    sees identical input in development and production.
    """

    def __init__(self, records: Optional[List[RawOrderRecord]] = None):
        self._orders: Dict[str, RawOrderRecord] = {}
        self._customers: Dict[str, CustomerRecord] = {}
        self.status_updates: List[tuple] = []

        for record in records or []:
            self._orders[str(record["id"])] = dict(record)

    def _with_customer(self, record: RawOrderRecord) -> RawOrderRecord:
        row = dict(record)
        customer = self._customers.get(row.get("customer_id") or "")
        if customer is not None:
            row["customers"] = dict(customer)
        return row

    async def fetch_all_orders(self) -> List[RawOrderRecord]:
        rows = [self._with_customer(r) for r in self._orders.values()]
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return rows

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        expected_status: Optional[str] = None
    ) -> RawOrderRecord:
        self.status_updates.append((order_id, status))

        record = self._orders.get(order_id)
        if record is None:
            raise RecordNotFound(f"Order {order_id} not found", order_id=order_id)

        current = record.get("status")
        if expected_status is not None and current != expected_status:
            if current == status:
                return self._with_customer(record)
            raise StatusConflict(
                f"Order {order_id} is {current}, expected {expected_status}",
                order_id=order_id
            )

        return await self.update_order(order_id, {"status": status})

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> RawOrderRecord:
        record = self._orders.get(order_id)
        if record is None:
            raise RecordNotFound(f"Order {order_id} not found", order_id=order_id)

        data = dict(fields)
        if isinstance(data.get("items"), list):
            data["items"] = json.dumps(data["items"])

        record.update(data)
        record["updated_at"] = _utcnow_iso()
        return self._with_customer(record)

    async def create_order(
        self,
        customer_id: Optional[str],
        items: List[Dict[str, Any]],
        total_amount: float,
        status: str = "pending"
    ) -> RawOrderRecord:
        now = _utcnow_iso()
        record = {
            "id": str(uuid.uuid4()),
            "customer_id": customer_id,
            "items": json.dumps(items),
            "total_amount": total_amount,
            "status": status,
            "created_at": now,
            "updated_at": now,
        }
        self._orders[record["id"]] = record
        return self._with_customer(record)

    async def create_or_update_customer(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None
    ) -> CustomerRecord:
        for customer in self._customers.values():
            if customer["phone"] == phone:
                customer.update({"name": name, "email": email})
                return dict(customer)

        customer = {"id": str(uuid.uuid4()), "name": name, "phone": phone, "email": email}
        self._customers[customer["id"]] = customer
        return dict(customer)
