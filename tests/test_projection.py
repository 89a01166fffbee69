from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import O1, make_record
from order_status import OrderStatus
from projection import GUEST_NAME, OrderItem, parse_timestamp, project


def test_project_parses_serialized_items_and_customer():
    record = make_record(
        O1,
        items=[{"name": "Pepperoni Pizza", "quantity": 2, "price": 12.0},
               {"name": "Garlic Knots", "price": 4.5}],
        customer={"id": "cust-1", "name": "Bob Johnson", "phone": "555-5678", "email": "bob@example.com"},
    )

    order = project(record)

    assert order.id == O1
    assert order.display_number == "a1b2c3d4"
    assert order.order_number == "#a1b2c3d4"
    assert order.status is OrderStatus.NEW
    assert order.items == (
        OrderItem("Pepperoni Pizza", 2, 12.0),
        OrderItem("Garlic Knots", 1, 4.5),
    )
    assert order.item_lines == ["2x Pepperoni Pizza", "1x Garlic Knots"]
    assert order.total_amount == 28.5
    assert order.customer.name == "Bob Johnson"
    assert order.customer.email == "bob@example.com"
    assert order.pending_transition is None
    assert order.diagnostics == ()


def test_project_accepts_structured_item_list():
    record = make_record(O1)
    record["items"] = [{"name": "Fries", "quantity": 1, "unit_price": 3.0}]
    record["total_amount"] = 3.0

    order = project(record)

    assert order.items == (OrderItem("Fries", 1, 3.0),)
    assert not order.items_unparseable


def test_malformed_items_flag_order_without_raising():
    record = make_record(O1, items="not json{", total=17.0)

    order = project(record)

    assert order.items == ()
    assert order.items_unparseable is True
    assert "items_unparseable" in order.diagnostics
    # items cannot be recomputed, so the stored total is trusted
    assert order.total_amount == 17.0


def test_invalid_item_quantity_is_a_parse_failure():
    order = project(make_record(O1, items='[{"name": "Taco", "quantity": 0, "price": 3}]', total=0))

    assert order.items_unparseable
    assert order.items == ()


def test_total_recomputed_when_persisted_total_diverges():
    order = project(make_record(O1, total=99.0))

    assert order.total_amount == 17.0
    assert "total_recomputed" in order.diagnostics


def test_total_within_tolerance_is_trusted():
    order = project(make_record(O1, total=17.004))

    assert order.total_amount == 17.004
    assert "total_recomputed" not in order.diagnostics


def test_total_computed_when_missing_or_non_numeric():
    record = make_record(O1)
    record["total_amount"] = "abc"

    assert project(record).total_amount == 17.0


def test_item_without_price_keeps_persisted_total():
    order = project(make_record(O1, items='[{"name": "Vegan Bowl"}]', total=11.0))

    assert order.items == (OrderItem("Vegan Bowl", 1, 0.0),)
    assert order.total_amount == 11.0
    assert "item_price_missing" in order.diagnostics


def test_status_synonyms_normalized_at_ingestion():
    assert project(make_record(O1, "completed")).status is OrderStatus.PICKED_UP
    assert project(make_record(O1, "Picked Up")).status is OrderStatus.PICKED_UP


def test_unknown_or_missing_status_defaults_to_new():
    unknown = project(make_record(O1, "archived"))
    missing = project(make_record(O1, None))

    assert unknown.status is OrderStatus.NEW
    assert "status_unrecognized" in unknown.diagnostics
    assert missing.status is OrderStatus.NEW
    assert "status_missing" in missing.diagnostics


def test_customer_falls_back_to_guest():
    order = project(make_record(O1))

    assert order.customer.name == GUEST_NAME
    assert order.customer.phone == ""


def test_garbage_record_never_raises():
    order = project(None)

    assert order.id == ""
    assert order.items_unparseable
    assert "record_malformed" in order.diagnostics
    assert "id_missing" in order.diagnostics


def test_parse_timestamp_handles_zulu_and_naive_values():
    assert parse_timestamp("2026-10-19T10:00:00Z") == datetime(2026, 10, 19, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2026-10-19T10:00:00") == datetime(2026, 10, 19, 10, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


@pytest.mark.parametrize(
    "raw,microsecond",
    [
        ("2026-10-19T10:00:00.12345+00:00", 123450),
        ("2026-10-19T10:00:00.1Z", 100000),
        ("2026-10-19T10:00:00.123456789+00:00", 123456),
    ],
)
def test_parse_timestamp_normalizes_fractional_seconds(raw, microsecond):
    parsed = parse_timestamp(raw)

    assert parsed == datetime(2026, 10, 19, 10, 0, 0, microsecond, tzinfo=timezone.utc)


def test_store_timestamps_with_trimmed_fraction_are_kept():
    order = project(make_record(O1, created_at="2026-10-19T10:00:00.12345+00:00"))

    assert order.created_at is not None
    assert "created_at_unparseable" not in order.diagnostics


def test_unparseable_created_at_is_flagged():
    order = project(make_record(O1, created_at="yesterday"))

    assert order.created_at is None
    assert "created_at_unparseable" in order.diagnostics


def test_to_dict_exposes_visible_status():
    order = project(make_record(O1)).with_pending(OrderStatus.PREPARING)

    data = order.to_dict()

    assert data["status"] == "New"
    assert data["visible_status"] == "Preparing"
    assert data["pending_transition"] == "Preparing"
    assert data["item_lines"] == ["2x Classic Burger"]
