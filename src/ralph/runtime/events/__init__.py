"""Loop event types, the bounded event stream and the websocket hub."""

from .models import LoopEvent
from .stream import EventStream

__all__ = ["LoopEvent", "EventStream"]
