"""Row-level change relay for messages and conversations.

Subscribers register for one table, optionally narrowed by column equality
filters and event types. Publishing fans an event out to every matching
subscriber; a failing subscriber never affects the others. Delivery order
across subscribers is not part of the contract, so consumers dedupe by id.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from ume_messaging.metrics.messaging_metrics import (
    relay_callback_errors_total,
    relay_events_published_total,
)

logger = logging.getLogger(__name__)


class ChangeEventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """One row change. ``new`` is empty for DELETE, ``old`` for INSERT."""

    event_type: ChangeEventType
    table: str
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)
    commit_timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about: ``new`` unless it was deleted."""
        return self.new or self.old

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "table": self.table,
            "new": self.new,
            "old": self.old,
            "commit_timestamp": self.commit_timestamp.isoformat(),
        }


ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


def parse_filter(value: Union[str, Mapping[str, Any], None]) -> dict[str, str]:
    """Normalize a subscription filter.

    Accepts a mapping of column to value, or the ``column=eq.value`` string
    form (several joined by ``&``).
    """
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items()}

    parsed: dict[str, str] = {}
    for clause in str(value).split("&"):
        clause = clause.strip()
        if not clause:
            continue
        column, sep, rest = clause.partition("=")
        if not sep or not column:
            raise ValueError(f"Invalid filter clause: {clause!r}")
        if rest.startswith("eq."):
            rest = rest[3:]
        parsed[column.strip()] = rest
    return parsed


class Subscription:
    """Handle returned by :meth:`ChangeRelay.subscribe`."""

    def __init__(
        self,
        relay: "ChangeRelay",
        table: str,
        callback: ChangeCallback,
        filters: dict[str, str],
        event_types: Optional[frozenset[ChangeEventType]],
    ) -> None:
        self.id = uuid.uuid4().hex
        self.table = table
        self.callback = callback
        self.filters = filters
        self.event_types = event_types
        self._relay = relay
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        row = event.row
        return all(str(row.get(col)) == val for col, val in self.filters.items())

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        self._relay._remove(self)


class ChangeRelay:
    """Process-local publish/subscribe hub for row change events."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filter: Union[str, Mapping[str, Any], None] = None,
        event_types: Optional[list[ChangeEventType]] = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            table,
            callback,
            parse_filter(filter),
            frozenset(event_types) if event_types else None,
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            "Subscribed %s to %s filter=%s",
            subscription.id,
            table,
            subscription.filters,
        )
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscriber.

        Returns the number of subscribers that handled it without error.
        """
        relay_events_published_total.labels(
            table=event.table, event_type=event.event_type.value
        ).inc()
        delivered = 0
        # Snapshot: callbacks may subscribe or unsubscribe while we iterate
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                relay_callback_errors_total.labels(table=event.table).inc()
                logger.exception(
                    "Error in change callback for %s %s",
                    event.table,
                    event.event_type.value,
                )
        return delivered

    def clear(self) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.unsubscribe()
