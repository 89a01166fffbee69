from __future__ import annotations

import itertools

import pytest

from order_status import (
    BOARD_COLUMNS,
    OrderStatus,
    allowed_targets,
    is_valid_transition,
    normalize_status,
)

NEW = OrderStatus.NEW
PREPARING = OrderStatus.PREPARING
READY = OrderStatus.READY
PICKED_UP = OrderStatus.PICKED_UP
CANCELLED = OrderStatus.CANCELLED

EXPECTED_EDGES = {
    (NEW, PREPARING),
    (PREPARING, READY),
    (NEW, CANCELLED),
    (PREPARING, CANCELLED),
    (READY, CANCELLED),
}


@pytest.mark.parametrize("current,target", list(itertools.product(OrderStatus, repeat=2)))
def test_transition_table_is_exact(current, target):
    assert is_valid_transition(current, target) == ((current, target) in EXPECTED_EDGES)


def test_no_backward_moves():
    assert not is_valid_transition(READY, PREPARING)
    assert not is_valid_transition(PREPARING, NEW)
    assert not is_valid_transition(READY, NEW)


def test_terminal_statuses_have_no_targets():
    assert allowed_targets(PICKED_UP) == ()
    assert allowed_targets(CANCELLED) == ()
    assert allowed_targets(READY) == (CANCELLED,)
    assert PICKED_UP.is_terminal and CANCELLED.is_terminal
    assert not READY.is_terminal


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("pending", NEW),
        ("New", NEW),
        ("preparing", PREPARING),
        ("READY", READY),
        ("completed", PICKED_UP),
        ("Picked Up", PICKED_UP),
        ("picked_up", PICKED_UP),
        ("cancelled", CANCELLED),
        ("canceled", CANCELLED),
        ("  ready ", READY),
        (READY, READY),
    ],
)
def test_normalize_status_synonyms(raw, expected):
    assert normalize_status(raw) is expected


@pytest.mark.parametrize("raw", ["archived", "", None, 3, ["ready"]])
def test_normalize_status_unknown(raw):
    assert normalize_status(raw) is None


def test_store_values_use_store_vocabulary():
    assert [s.store_value for s in OrderStatus] == [
        "pending", "preparing", "ready", "completed", "cancelled"
    ]
    for status in OrderStatus:
        assert normalize_status(status.store_value) is status


def test_board_columns_exclude_terminal_statuses():
    assert BOARD_COLUMNS == (NEW, PREPARING, READY)
