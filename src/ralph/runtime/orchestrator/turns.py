"""Run one agent turn: stream its events, record them, and collect its text."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Protocol, TypeVar

from ...agent.context import ContextTracker
from ...agent.events import StreamEvent, TextCollector, ToolUseEvent
from ...agent.session import SessionCancelledError
from ...cancel import CancelToken
from ...constants import CONTEXT_LIMIT_PERCENT, EDIT_TOOL_NAMES, SESSION_ID_ENV_VAR, TEAM_MODE_ENV
from ..domain.models import RawEvent, TurnRole, TurnSession
from ..events.models import AgentOutput, AgentStream, ContextLimit, LoopErrorEvent, LoopEvent, TurnEnded, TurnStarted
from ..storage.container import Container

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AgentSessionHandle(Protocol):
    def events(self) -> Iterator[StreamEvent]: ...

    def wait(self, timeout: Optional[float] = None) -> Optional[BaseException]: ...

    def cancel(self) -> None: ...


class AgentRunner(Protocol):
    """What the orchestrator needs from an agent client."""

    @property
    def model(self) -> Optional[str]: ...

    def run(
        self,
        prompt: str,
        *,
        env: Optional[dict[str, str]] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AgentSessionHandle: ...


def best_effort(log: logging.Logger, what: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Call a persistence operation, logging and swallowing any failure."""
    try:
        return fn(*args, **kwargs)
    except Exception as exc:
        log.warning("Failed to %s: %s", what, exc)
        return None


@dataclass
class TurnOutcome:
    session_id: str
    role: TurnRole
    text: str = ""
    error: Optional[BaseException] = None
    edit_tools: list[str] = field(default_factory=list)
    context_limited: bool = False
    event_count: int = 0

    @property
    def edited_files(self) -> bool:
        return bool(self.edit_tools)


@dataclass
class TurnContext:
    """Everything a turn needs besides its prompt."""
    agent: AgentRunner
    container: Container
    emit: Callable[[LoopEvent], Any]
    plan_id: str
    iteration: int
    max_iterations: int
    cancel_token: Optional[CancelToken] = None
    context_limit_percent: float = CONTEXT_LIMIT_PERCENT
    log: logging.Logger = field(default_factory=lambda: logger)


def run_turn(
    ctx: TurnContext,
    *,
    role: TurnRole,
    prompt: str,
    env: Optional[dict[str, str]] = None,
    team_mode: bool = False,
) -> TurnOutcome:
    """Run one agent turn to completion.

    A turn whose process exits with an error still returns its collected text
    (``outcome.error`` holds the failure). Crossing the context limit cancels
    the process but is not an error.

    Raises:
        RunCancelledError: If the run's cancel token fired during the turn.
        AgentError: If the agent process could not be started.
    """
    log = ctx.log
    record = TurnSession(plan_id=ctx.plan_id, iteration=ctx.iteration, role=role, prompt=prompt)
    best_effort(log, "create session", ctx.container.sessions.create, record)
    if team_mode:
        env = {**TEAM_MODE_ENV, SESSION_ID_ENV_VAR: record.id, **(env or {})}
    outcome = TurnOutcome(session_id=record.id, role=role)
    common = {"iteration": ctx.iteration, "max_iterations": ctx.max_iterations}

    ctx.emit(TurnStarted(role=role, session_id=record.id, team_mode=team_mode, message=f"Starting {role} turn", **common))
    try:
        handle = ctx.agent.run(prompt, env=env, cancel_token=ctx.cancel_token)
    except Exception as exc:
        best_effort(log, "mark session failed", ctx.container.sessions.complete, record.id, output="", status="failed", error=str(exc))
        ctx.emit(TurnEnded(role=role, session_id=record.id, failed=True, message=str(exc), **common))
        raise

    tracker = ContextTracker(ctx.agent.model, limit_percent=ctx.context_limit_percent)
    collector = TextCollector()
    for seq, event in enumerate(handle.events()):
        outcome.event_count += 1
        ctx.emit(AgentStream(role=role, event=event, **common))
        best_effort(
            log,
            "store raw event",
            ctx.container.raw_events.append,
            RawEvent(session_id=record.id, seq=seq, kind=event.kind, raw=event.raw.decode("utf-8", errors="replace")),
        )
        collector.add(event)
        if isinstance(event, ToolUseEvent):
            outcome.edit_tools.extend(name for name in event.tool_names if name in EDIT_TOOL_NAMES)
        if tracker.observe(event):
            outcome.context_limited = True
            log.warning(
                "Context usage %.1f%% of %d tokens crossed the limit; ending %s turn",
                tracker.usage_percent,
                tracker.window,
                role,
            )
            ctx.emit(
                ContextLimit(
                    role=role,
                    tokens=tracker.total_tokens,
                    window=tracker.window,
                    message="Context limit reached, ending session",
                    **common,
                )
            )
            handle.cancel()

    error = handle.wait()
    outcome.text = collector.text()
    if ctx.cancel_token is not None and ctx.cancel_token.cancelled:
        best_effort(log, "mark session failed", ctx.container.sessions.complete, record.id, output=outcome.text, status="failed", error="cancelled")
        ctx.emit(TurnEnded(role=role, session_id=record.id, failed=True, message="Turn cancelled", **common))
        raise ctx.cancel_token.error()
    if outcome.context_limited and isinstance(error, SessionCancelledError):
        error = None
    outcome.error = error

    if error is not None:
        log.warning("%s turn ended with error: %s", role.capitalize(), error)
        ctx.emit(LoopErrorEvent(message=f"{role} session error: {error}", error_type=type(error).__name__, **common))
    best_effort(
        log,
        "complete session",
        ctx.container.sessions.complete,
        record.id,
        output=outcome.text,
        status="failed" if error is not None else "completed",
        error=str(error) if error is not None else None,
    )
    ctx.emit(AgentOutput(role=role, output=outcome.text, **common))
    ctx.emit(TurnEnded(role=role, session_id=record.id, failed=error is not None, message=f"{role} turn ended", **common))
    return outcome
