"""External system integrations"""

from .event_bus import EventBus, Event

__all__ = [
    "EventBus",
    "Event"
]
