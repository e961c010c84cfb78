"""Context-window sizes per model and per-turn token accounting."""

from __future__ import annotations

import threading
from typing import Optional

from ..constants import CONTEXT_LIMIT_PERCENT, DEFAULT_CONTEXT_WINDOW
from .events import StreamEvent, message_context

# No prefix is a prefix of another, so lookup order does not matter.
MODEL_CONTEXT_WINDOWS: tuple[tuple[str, int], ...] = (
    ("claude-3-5-sonnet", 200_000),
    ("claude-3-sonnet", 200_000),
    ("claude-3-haiku", 200_000),
    ("claude-3-opus", 200_000),
    ("claude-sonnet-4", 200_000),
    ("claude-haiku-4", 200_000),
    ("claude-opus-4", 200_000),
)


def context_window_for_model(model: Optional[str]) -> int:
    """Return the context window for ``model``, or the default for unknown names."""
    name = str(model or "")
    for prefix, size in MODEL_CONTEXT_WINDOWS:
        if name.startswith(prefix):
            return size
    return DEFAULT_CONTEXT_WINDOW


class ContextTracker:
    """Accumulate reported token usage and flag when a turn nears the window.

    The window is resolved from the configured model, or from the first
    model name seen in the stream when none was configured.
    """

    def __init__(self, model: Optional[str] = None, *, limit_percent: float = CONTEXT_LIMIT_PERCENT) -> None:
        self._lock = threading.Lock()
        self._model = model or None
        self._window = context_window_for_model(model)
        self._limit_percent = limit_percent
        self._total = 0
        self._tripped = False

    @property
    def window(self) -> int:
        return self._window

    @property
    def total_tokens(self) -> int:
        return self._total

    @property
    def limit_tokens(self) -> int:
        return int(self._window * self._limit_percent / 100.0)

    @property
    def usage_percent(self) -> float:
        if self._window <= 0:
            return 0.0
        return self._total * 100.0 / self._window

    def observe(self, event: StreamEvent) -> bool:
        """Add the event's usage and report whether the limit was just crossed.

        Returns ``True`` exactly once per tracker: on the event that first
        pushes the running total to or past the limit.
        """
        message = message_context(event)
        if message is None:
            return False
        with self._lock:
            if self._model is None and message.model:
                self._model = message.model
                self._window = context_window_for_model(message.model)
            self._total += message.usage.total
            if self._tripped or self.usage_percent < self._limit_percent:
                return False
            self._tripped = True
            return True
