"""Life-event processing: requests, per-type handlers and the unit-of-work pipeline."""

from .events import ApplicationRef, EventOutcome, EventRequest, EventState, EventType, Payload
from .handlers import HANDLERS, EventContext
from .processor import LifeEventProcessor, PreparedEvent

__all__ = [
    "ApplicationRef",
    "EventOutcome",
    "EventRequest",
    "EventState",
    "EventType",
    "Payload",
    "HANDLERS",
    "EventContext",
    "LifeEventProcessor",
    "PreparedEvent",
]
