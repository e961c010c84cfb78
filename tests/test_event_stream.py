from __future__ import annotations

import logging
import threading

import pytest

from ralph.runtime.events.models import AgentStream, Completed, DoneSuppressed, IterationStarted, LoopErrorEvent
from ralph.runtime.events.stream import EventStream

from fakes import text_event


def test_emit_never_blocks_and_counts_drops(caplog: pytest.LogCaptureFixture) -> None:
    stream = EventStream(maxsize=2)
    with caplog.at_level(logging.WARNING):
        results = [stream.emit(IterationStarted(iteration=i)) for i in range(5)]
    assert results == [True, True, False, False, False]
    assert stream.dropped == 3
    assert sum("dropped" in r.message for r in caplog.records) == 1


def test_iteration_drains_then_stops_after_close() -> None:
    stream = EventStream(maxsize=10)
    stream.emit(IterationStarted(iteration=1))
    stream.emit(Completed(iteration=1))
    stream.close()
    assert stream.emit(IterationStarted(iteration=2)) is False
    assert [event.kind for event in stream] == ["iteration_start", "completed"]


def test_consumer_on_another_thread_sees_every_event() -> None:
    stream = EventStream(maxsize=1000)
    seen: list[int] = []

    def consume() -> None:
        for event in stream:
            seen.append(event.iteration)

    consumer = threading.Thread(target=consume)
    consumer.start()
    for i in range(100):
        stream.emit(IterationStarted(iteration=i))
    stream.close()
    consumer.join(timeout=10)
    assert not consumer.is_alive()
    assert seen == list(range(100))


def test_get_returns_none_on_timeout() -> None:
    assert EventStream().get(timeout=0.01) is None


def test_events_serialize_with_nested_payloads() -> None:
    data = AgentStream(iteration=2, max_iterations=5, role="developer", event=text_event("hi")).to_dict()
    assert data["kind"] == "agent_stream"
    assert data["event"]["kind"] == "assistant_text"
    assert data["event"]["text"] == "hi"
    suppressed = DoneSuppressed(role="developer", tools=("Edit",)).to_dict()
    assert suppressed["tools"] == ("Edit",)
    assert LoopErrorEvent(message="boom", error_type="AgentExitError").to_dict()["kind"] == "error"
