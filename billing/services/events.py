"""
Domain events emitted by the subscription lifecycle.

Events are blinker signals in a private namespace. Receivers subscribe with
``signal_for(SubscriptionEvent.STARTED).connect(receiver)``. Delivery is
best-effort: a failing receiver is logged and never undoes the state change
that triggered it.
"""
import enum

from blinker import Namespace
from flask import current_app

_signals = Namespace()


class SubscriptionEvent(str, enum.Enum):
    STARTED = 'subscription-started'
    UPDATED = 'subscription-updated'
    CANCELLED = 'subscription-cancelled'
    PAUSED = 'subscription-paused'
    RESUMED = 'subscription-resumed'
    SWAPPED = 'subscription-swapped'
    SCHEDULE_CREATED = 'schedule-created'
    SCHEDULE_RELEASED = 'schedule-released'


def signal_for(event: SubscriptionEvent):
    """Signal object for an event."""
    return _signals.signal(SubscriptionEvent(event).value)


def emit(event: SubscriptionEvent, sender, **payload) -> None:
    """Send an event to every connected receiver."""
    signal = signal_for(event)
    for receiver in signal.receivers_for(sender):
        try:
            receiver(sender, **payload)
        except Exception:
            current_app.logger.exception(f'Receiver for {signal.name} failed')
