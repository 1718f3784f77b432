"""
In-process change-notification channel.

Table mutations made through the data service are published here after their
transaction commits. Listeners subscribe per table, optionally narrowed to one
event type and to rows whose columns match given values (for example the
messages of a single ticket). Delivery is synchronous, in subscription order.
"""

import threading
from typing import Any, Callable, Optional

from pydantic import BaseModel

from loyalty_admin.logger import setup_logger

logger = setup_logger(__name__)

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")


class ChangeEvent(BaseModel):
    event_type: str
    table: str
    new: dict[str, Any] = {}
    old: Optional[dict[str, Any]] = None


Listener = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        callback: Listener,
        event: Optional[str],
        match: Optional[dict[str, Any]],
    ):
        self.feed = feed
        self.table = table
        self.callback = callback
        self.event = event
        self.match = match or {}
        self.active = True

    def accepts(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        if self.event is not None and event.event_type != self.event:
            return False
        row = event.new or event.old or {}
        return all(row.get(key) == value for key, value in self.match.items())

    def unsubscribe(self) -> None:
        self.feed._remove(self)


class ChangeFeed:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        table: str,
        callback: Listener,
        event: Optional[str] = None,
        match: Optional[dict[str, Any]] = None,
    ) -> Subscription:
        if event is not None and event not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {event}")
        subscription = Subscription(self, table, callback, event, match)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {table} changes (event={event or '*'}, match={match or {}})")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscription.active = False
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching listener; return how many received it."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.accepts(event)]
        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(event)
                delivered += 1
            except Exception:
                logger.exception(f"Listener for {event.table} {event.event_type} failed")
        return delivered

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


def apply_change(
    rows: list[dict[str, Any]],
    event: ChangeEvent,
    prepend: bool = False,
) -> list[dict[str, Any]]:
    """
    Return a new list with the event applied, keyed by row ``id``.

    INSERT adds the row (or replaces a row already carrying its id, so a
    redelivered event is harmless). UPDATE replaces the matching row and is
    ignored when the row is not held locally. DELETE drops it.
    """
    key = (event.new or event.old or {}).get("id")
    if key is None:
        return list(rows)

    if event.event_type == "DELETE":
        return [row for row in rows if row.get("id") != key]

    present = any(row.get("id") == key for row in rows)
    if present:
        return [event.new if row.get("id") == key else row for row in rows]
    if event.event_type == "INSERT":
        return [event.new, *rows] if prepend else [*rows, event.new]
    return list(rows)
