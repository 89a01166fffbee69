"""
Subscription Hub
================
Fan-out of board snapshots and error notices to any number of observers
(board columns, counters, the public ready board, sound triggers).

Delivery rules:
- Subscribers always receive the full snapshot, never a diff
- A new subscriber gets the current snapshot immediately
- A failing subscriber is logged and never blocks the others
"""

import logging
from typing import Callable, List, Sequence

from errors import BoardError


logger = logging.getLogger(__name__)


Snapshot = Sequence  # Sequence[Order]
SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[BoardError], None]
Unsubscribe = Callable[[], None]


class SubscriptionHub:
    """
    Observer registry owned by one order cache.

    The hub never reads or writes orders itself; it asks the provider for
    the current snapshot when a subscriber joins.
    """

    def __init__(self, snapshot_provider: Callable[[], Snapshot]):
        self._snapshot_provider = snapshot_provider
        self._subscribers: List[SnapshotCallback] = []
        self._error_subscribers: List[ErrorCallback] = []
        self.publish_count = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: SnapshotCallback) -> Unsubscribe:
        """
        Register a snapshot observer.

        Args:
            callback: Called with the full snapshot on every change

        Returns:
            Function removing the subscription (safe to call twice)
        """
        self._subscribers.append(callback)
        self._deliver(callback, self._snapshot_provider())

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def subscribe_errors(self, callback: ErrorCallback) -> Unsubscribe:
        """Register an observer for surfaced board errors."""
        self._error_subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._error_subscribers:
                self._error_subscribers.remove(callback)

        return unsubscribe

    def publish(self, snapshot: Snapshot) -> None:
        """Send a snapshot to every active subscriber."""
        self.publish_count += 1
        for callback in list(self._subscribers):
            self._deliver(callback, snapshot)

    def publish_error(self, error: BoardError) -> None:
        """Send an error notice to every error subscriber."""
        logger.info(
            f"Board error surfaced: {error.code}",
            extra={"order_id": error.order_id, "code": error.code}
        )
        for callback in list(self._error_subscribers):
            try:
                callback(error)
            except Exception:
                logger.exception("Error subscriber failed")

    def dispose(self) -> None:
        """Drop all subscribers."""
        self._subscribers.clear()
        self._error_subscribers.clear()

    def _deliver(self, callback: SnapshotCallback, snapshot: Snapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("Snapshot subscriber failed")
