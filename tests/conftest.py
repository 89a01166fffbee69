from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import pytest

from errors import StoreError
from order_store import InMemoryOrderStore
from projection import project

O1 = "a1b2c3d4-0000-4000-8000-000000000001"
O2 = "b2c3d4e5-0000-4000-8000-000000000002"
O3 = "c3d4e5f6-0000-4000-8000-000000000003"

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def make_record(
    order_id: str,
    status: str = "pending",
    items: Any = None,
    total: Any = None,
    created_at: str = "2026-10-19T10:00:00+00:00",
    customer: dict | None = None,
) -> dict:
    if items is None:
        items = [{"name": "Classic Burger", "quantity": 2, "price": 8.5}]
    if total is None and isinstance(items, list):
        total = round(sum(i.get("quantity", 1) * i.get("price", 0) for i in items), 2)
    record = {
        "id": order_id,
        "status": status,
        "items": json.dumps(items) if isinstance(items, list) else items,
        "total_amount": total,
        "created_at": created_at,
        "updated_at": created_at,
        "customer_id": None,
    }
    if customer is not None:
        record["customers"] = customer
    return record


def make_order(order_id: str, status: str = "pending", **kwargs):
    return project(make_record(order_id, status, **kwargs))


class ScriptedStore(InMemoryOrderStore):
    """In-memory store with failure injection and a gate on status updates."""

    def __init__(self, records=None):
        super().__init__(records)
        self.fail_fetch = False
        self.fail_updates = 0
        self.update_gate: asyncio.Event | None = None
        self.fetch_calls = 0

    async def fetch_all_orders(self):
        self.fetch_calls += 1
        if self.fail_fetch:
            raise StoreError("fetch failed")
        return await super().fetch_all_orders()

    async def update_order_status(self, order_id, status, expected_status=None):
        if self.update_gate is not None:
            await self.update_gate.wait()
        if self.fail_updates:
            self.fail_updates -= 1
            raise StoreError("update rejected")
        return await super().update_order_status(order_id, status, expected_status)

    def set_status(self, order_id: str, status: str) -> None:
        """Change a record as another client would."""
        self._orders[order_id]["status"] = status


@pytest.fixture()
def records():
    return [
        make_record(O1, "pending", created_at="2026-10-19T10:00:00+00:00",
                    customer={"id": "cust-1", "name": "Alice Smith", "phone": "555-1234"}),
        make_record(O2, "ready", created_at="2026-10-19T09:30:00+00:00"),
        make_record(O3, "preparing", created_at="2026-10-19T09:45:00+00:00"),
    ]


@pytest.fixture()
def store(records):
    return ScriptedStore(records)


@pytest.fixture()
def clock():
    return lambda: FIXED_NOW
