"""Loop events: the orchestrator's observable output.

Every event carries the iteration it belongs to and the iteration ceiling in
force when it was emitted. Variant-specific payload lives on the subclass.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Optional

from ...agent.events import StreamEvent


@dataclass(frozen=True)
class LoopEvent:
    kind: ClassVar[str] = "event"
    iteration: int = 0
    max_iterations: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for websocket clients and the CLI."""
        data: dict[str, Any] = {"kind": self.kind}
        for item in fields(self):
            value = getattr(self, item.name)
            if hasattr(value, "to_dict"):
                value = value.to_dict()
            data[item.name] = value
        return data


@dataclass(frozen=True)
class Started(LoopEvent):
    kind: ClassVar[str] = "started"
    plan_id: str = ""
    resumed_from: int = 0


@dataclass(frozen=True)
class IterationStarted(LoopEvent):
    kind: ClassVar[str] = "iteration_start"


@dataclass(frozen=True)
class IterationEnded(LoopEvent):
    kind: ClassVar[str] = "iteration_end"


@dataclass(frozen=True)
class PromptBuilt(LoopEvent):
    kind: ClassVar[str] = "prompt_built"
    role: str = ""
    prompt: str = ""


@dataclass(frozen=True)
class TurnStarted(LoopEvent):
    kind: ClassVar[str] = "turn_start"
    role: str = ""
    session_id: str = ""
    team_mode: bool = False


@dataclass(frozen=True)
class AgentStream(LoopEvent):
    """Passthrough of one decoded agent event."""
    kind: ClassVar[str] = "agent_stream"
    role: str = ""
    event: Optional[StreamEvent] = None


@dataclass(frozen=True)
class AgentOutput(LoopEvent):
    """The complete text collected from a turn."""
    kind: ClassVar[str] = "agent_output"
    role: str = ""
    output: str = ""


@dataclass(frozen=True)
class TurnEnded(LoopEvent):
    kind: ClassVar[str] = "turn_end"
    role: str = ""
    session_id: str = ""
    failed: bool = False


@dataclass(frozen=True)
class ContextLimit(LoopEvent):
    kind: ClassVar[str] = "context_limit"
    role: str = ""
    tokens: int = 0
    window: int = 0


@dataclass(frozen=True)
class DeveloperDone(LoopEvent):
    kind: ClassVar[str] = "developer_done"


@dataclass(frozen=True)
class DoneSuppressed(LoopEvent):
    """A done signal was ignored because the turn edited files."""
    kind: ClassVar[str] = "done_suppressed"
    role: str = ""
    tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReviewerApproved(LoopEvent):
    kind: ClassVar[str] = "reviewer_approved"


@dataclass(frozen=True)
class ReviewerFeedbackGiven(LoopEvent):
    kind: ClassVar[str] = "reviewer_feedback"
    feedback: str = ""


@dataclass(frozen=True)
class BothDone(LoopEvent):
    kind: ClassVar[str] = "both_done"


@dataclass(frozen=True)
class Done(LoopEvent):
    """The single agent signalled completion."""
    kind: ClassVar[str] = "done"


@dataclass(frozen=True)
class ChangeStarted(LoopEvent):
    """A fresh VCS change was opened for a single-flow iteration."""
    kind: ClassVar[str] = "jj_new"


@dataclass(frozen=True)
class Distilling(LoopEvent):
    kind: ClassVar[str] = "distilling"


@dataclass(frozen=True)
class ChangeCommitted(LoopEvent):
    kind: ClassVar[str] = "jj_commit"
    description: str = ""


@dataclass(frozen=True)
class ExtendedModeTriggered(LoopEvent):
    kind: ClassVar[str] = "extended_mode_triggered"
    new_ceiling: int = 0


@dataclass(frozen=True)
class Completed(LoopEvent):
    kind: ClassVar[str] = "completed"


@dataclass(frozen=True)
class MaxIterationsReached(LoopEvent):
    kind: ClassVar[str] = "max_iterations"


@dataclass(frozen=True)
class LoopErrorEvent(LoopEvent):
    """A per-iteration failure; the loop keeps going after it."""
    kind: ClassVar[str] = "error"
    error_type: str = ""
