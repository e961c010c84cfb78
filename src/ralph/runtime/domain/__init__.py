"""Domain models for plan and turn state."""

from .models import NoteRecord, Plan, RawEvent, ReviewerFeedback, TurnSession

__all__ = [
    "Plan",
    "TurnSession",
    "NoteRecord",
    "ReviewerFeedback",
    "RawEvent",
]
