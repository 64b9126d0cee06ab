from .event_log import EventLogDB
from .models import CadenceEvent, EventType

__all__ = [
    "CadenceEvent",
    "EventType",
    "EventLogDB",
]
