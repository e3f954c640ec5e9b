"""In-process realtime change relay."""

from ume_messaging.realtime.relay import (
    ChangeEvent,
    ChangeEventType,
    ChangeRelay,
    Subscription,
)

__all__ = ["ChangeEvent", "ChangeEventType", "ChangeRelay", "Subscription"]
