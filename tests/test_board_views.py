from __future__ import annotations

from conftest import O1, O2, O3, make_order
from board_views import ReadyAnnouncer, ReadyBoard, StatusCounters, group_by_column
from order_cache import OrderCache
from order_status import OrderStatus


class FakeBoard:
    """Anything with ``subscribe`` can feed the observers."""

    def __init__(self):
        self.cache = OrderCache()

    def subscribe(self, callback):
        return self.cache.hub.subscribe(callback)


def make_board():
    board = FakeBoard()
    board.cache.replace_all([
        make_order(O1, "pending", created_at="2026-10-19T10:00:00+00:00"),
        make_order(O2, "ready", created_at="2026-10-19T09:30:00+00:00"),
        make_order(O3, "preparing", created_at="2026-10-19T09:45:00+00:00"),
        make_order("d4e5f6a7-0000-4000-8000-000000000004", "completed"),
    ])
    return board


def test_group_by_column_uses_visible_status_and_hides_terminal():
    board = make_board()
    board.cache.apply_optimistic(O3, OrderStatus.READY)

    columns = group_by_column(board.cache.snapshot())

    assert list(columns) == [OrderStatus.NEW, OrderStatus.PREPARING, OrderStatus.READY]
    assert [o.id for o in columns[OrderStatus.NEW]] == [O1]
    assert columns[OrderStatus.PREPARING] == []
    assert {o.id for o in columns[OrderStatus.READY]} == {O2, O3}


def test_status_counters_follow_snapshots():
    board = make_board()
    counters = StatusCounters().attach(board)

    assert counters.counts[OrderStatus.PICKED_UP] == 1
    assert counters.open_orders == 3

    board.cache.apply_optimistic(O1, OrderStatus.CANCELLED)

    data = counters.to_dict()
    assert data["Cancelled"] == 1
    assert data["New"] == 0
    assert data["open"] == 2
    assert data["pending"] == 1


def test_ready_board_shows_only_confirmed_ready_oldest_first():
    board = make_board()
    ready = ReadyBoard().attach(board)
    board.cache.apply_optimistic(O3, OrderStatus.READY)

    assert ready.order_numbers == ["#b2c3d4e5"]

    board.cache.confirm(O3, OrderStatus.READY)

    assert ready.order_numbers == ["#b2c3d4e5", "#c3d4e5f6"]
    data = ready.to_dict()
    assert data["count"] == 2
    assert data["orders"][0]["customer_name"] == "Guest"
    assert data["orders"][0]["item_lines"] == ["2x Classic Burger"]


def test_detached_observer_stops_updating():
    board = make_board()
    ready = ReadyBoard().attach(board)
    ready.detach()

    board.cache.apply_optimistic(O3, OrderStatus.READY)
    board.cache.confirm(O3, OrderStatus.READY)

    assert ready.order_numbers == ["#b2c3d4e5"]


def test_ready_announcer_skips_initial_state_and_fires_once():
    board = make_board()
    announced = []
    ReadyAnnouncer(announced.append).attach(board)

    assert announced == []

    board.cache.apply_optimistic(O3, OrderStatus.READY)
    board.cache.confirm(O3, OrderStatus.READY)

    assert [o.id for o in announced] == [O3]
    assert board.cache.confirm(O3, OrderStatus.READY) is False
    assert len(announced) == 1


def test_ready_announcer_waits_for_confirmation():
    board = make_board()
    announced = []
    ReadyAnnouncer(announced.append).attach(board)

    board.cache.apply_optimistic(O3, OrderStatus.READY)
    assert announced == []

    board.cache.reject(O3)
    board.cache.apply_optimistic(O3, OrderStatus.READY)
    board.cache.confirm(O3, OrderStatus.READY)

    assert [o.id for o in announced] == [O3]
