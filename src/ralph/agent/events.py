"""Typed events decoded from the agent CLI's stream-json output.

Every line of agent output becomes exactly one variant below. Each variant
carries its own payload and the original line bytes, so callers dispatch on
the class (or ``kind``) instead of probing optional fields.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Optional, Union


@dataclass(frozen=True)
class Usage:
    """Token usage reported by the agent."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_dict(cls, data: Any) -> "Usage":
        if not isinstance(data, dict):
            return cls()
        return cls(
            input_tokens=_int(data.get("input_tokens")),
            output_tokens=_int(data.get("output_tokens")),
            cache_read_input_tokens=_int(data.get("cache_read_input_tokens")),
            cache_creation_input_tokens=_int(data.get("cache_creation_input_tokens")),
        )


@dataclass(frozen=True)
class InitContent:
    session_id: str = ""
    model: str = ""
    cwd: str = ""
    tools: int = 0
    mcp_servers: int = 0


@dataclass(frozen=True)
class MessageContent:
    id: str = ""
    role: str = ""
    model: str = ""
    text: str = ""
    stop_reason: str = ""
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class ToolUseContent:
    id: str = ""
    name: str = ""
    input: Any = None


@dataclass(frozen=True)
class ToolResultContent:
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


@dataclass(frozen=True)
class ResultContent:
    session_id: str = ""
    cost_usd: float = 0.0
    duration_ms: int = 0
    duration_api_ms: int = 0
    num_turns: int = 0
    usage: Usage = field(default_factory=Usage)
    result: str = ""
    is_sub_agent: bool = False


@dataclass(frozen=True)
class ErrorContent:
    code: str = ""
    message: str = ""


@dataclass(frozen=True)
class SystemContent:
    subtype: str = ""
    message: str = ""


@dataclass(frozen=True)
class _EventBase:
    kind: ClassVar[str] = ""
    raw: bytes

    def to_dict(self) -> dict[str, Any]:
        """Serialize the payload plus the raw line (decoded as UTF-8)."""
        data = asdict(self)
        data.pop("raw", None)
        data["kind"] = self.kind
        data["raw"] = self.raw.decode("utf-8", errors="replace")
        return data


@dataclass(frozen=True)
class InitEvent(_EventBase):
    kind: ClassVar[str] = "init"
    init: InitContent = field(default_factory=InitContent)


@dataclass(frozen=True)
class MessageEvent(_EventBase):
    kind: ClassVar[str] = "message"
    message: MessageContent = field(default_factory=MessageContent)


@dataclass(frozen=True)
class AssistantTextEvent(_EventBase):
    """An incremental text chunk from partial-message streaming."""
    kind: ClassVar[str] = "assistant_text"
    text: str = ""


@dataclass(frozen=True)
class ToolUseEvent(_EventBase):
    """A tool call, with the context of the message that made it.

    ``tool_uses`` lists every tool_use block of the message in order;
    ``tool_use`` is the last of them.
    """
    kind: ClassVar[str] = "tool_use"
    tool_use: ToolUseContent = field(default_factory=ToolUseContent)
    message: MessageContent = field(default_factory=MessageContent)
    tool_uses: tuple[ToolUseContent, ...] = ()

    @property
    def tool_names(self) -> tuple[str, ...]:
        return tuple(item.name for item in (self.tool_uses or (self.tool_use,)))


@dataclass(frozen=True)
class ToolResultEvent(_EventBase):
    kind: ClassVar[str] = "tool_result"
    tool_result: ToolResultContent = field(default_factory=ToolResultContent)


@dataclass(frozen=True)
class ResultEvent(_EventBase):
    kind: ClassVar[str] = "result"
    result: ResultContent = field(default_factory=ResultContent)


@dataclass(frozen=True)
class ErrorEvent(_EventBase):
    kind: ClassVar[str] = "error"
    error: ErrorContent = field(default_factory=ErrorContent)


@dataclass(frozen=True)
class SystemEvent(_EventBase):
    kind: ClassVar[str] = "system"
    system: SystemContent = field(default_factory=SystemContent)


@dataclass(frozen=True)
class UnknownEvent(_EventBase):
    """A line whose shape is not recognized; ``type`` keeps its discriminator."""
    kind: ClassVar[str] = "unknown"
    type: str = "unknown"


StreamEvent = Union[
    InitEvent,
    MessageEvent,
    AssistantTextEvent,
    ToolUseEvent,
    ToolResultEvent,
    ResultEvent,
    ErrorEvent,
    SystemEvent,
    UnknownEvent,
]


def message_context(event: StreamEvent) -> Optional[MessageContent]:
    """Return the message attached to an event, if it carries one."""
    if isinstance(event, (MessageEvent, ToolUseEvent)):
        return event.message
    return None


class TextCollector:
    """Accumulate a session's text from whichever event shape the agent produced.

    Incremental chunks win; complete messages are the fallback; the final
    result text is the last resort.
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._messages: list[str] = []
        self._result = ""

    def add(self, event: StreamEvent) -> None:
        if isinstance(event, AssistantTextEvent):
            self._chunks.append(event.text)
        elif isinstance(event, MessageEvent):
            if event.message.text:
                self._messages.append(event.message.text)
        elif isinstance(event, ResultEvent):
            self._result = event.result.result

    def text(self) -> str:
        if self._chunks:
            return "".join(self._chunks)
        if self._messages:
            return "\n".join(self._messages)
        return self._result


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
