"""Bounded, drop-on-full event queue between the orchestrator and its observers."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator, Optional

from ...constants import DEFAULT_EVENT_BUFFER_SIZE
from .models import LoopEvent

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1


class EventStream:
    """Single-producer queue of :class:`LoopEvent` that never blocks the producer.

    When the consumer falls behind and the buffer is full, new events are
    dropped and counted. :meth:`close` marks the end of the run; iteration
    stops once the buffer is drained after that.
    """

    def __init__(self, maxsize: int = DEFAULT_EVENT_BUFFER_SIZE, *, logger: Optional[logging.Logger] = None) -> None:
        self._queue: "queue.Queue[LoopEvent]" = queue.Queue(maxsize=max(1, maxsize))
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._dropped = 0
        self._log = logger or logging.getLogger(__name__)

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def emit(self, event: LoopEvent) -> bool:
        """Enqueue ``event`` without blocking.

        Returns:
            bool: ``False`` when the event was dropped (buffer full or stream closed).
        """
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            with self._lock:
                self._dropped += 1
                dropped = self._dropped
            # Log the first drop, then every hundredth.
            if dropped == 1 or dropped % 100 == 0:
                self._log.warning("Event consumer is behind; dropped %d event(s), latest=%s", dropped, event.kind)
            return False

    def close(self) -> None:
        self._closed.set()

    def get(self, timeout: Optional[float] = None) -> Optional[LoopEvent]:
        """Return the next event, or ``None`` if none arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __iter__(self) -> Iterator[LoopEvent]:
        while True:
            try:
                yield self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    return
