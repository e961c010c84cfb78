"""Decode the agent CLI's line-delimited stream-json output into typed events."""

from __future__ import annotations

import json
from typing import Any, Iterable, Iterator, Optional, Union

from .events import (
    AssistantTextEvent,
    ErrorContent,
    ErrorEvent,
    InitContent,
    InitEvent,
    MessageContent,
    MessageEvent,
    ResultContent,
    ResultEvent,
    StreamEvent,
    SystemContent,
    SystemEvent,
    ToolResultContent,
    ToolResultEvent,
    ToolUseContent,
    ToolUseEvent,
    UnknownEvent,
    Usage,
)


class StreamDecodeError(Exception):
    """Raised when a line of agent output is not a JSON object."""

    def __init__(self, line: bytes, reason: str) -> None:
        preview = line[:200].decode("utf-8", errors="replace")
        super().__init__(f"malformed stream line ({reason}): {preview}")
        self.line = line
        self.reason = reason


def parse_line(line: Union[bytes, str]) -> Optional[StreamEvent]:
    """Classify one line of stream-json output.

    Args:
        line (Union[bytes, str]): One output line, with or without its newline.

    Returns:
        Optional[StreamEvent]: The decoded event, or ``None`` for a blank line.

    Raises:
        StreamDecodeError: If the line is not valid JSON or not a JSON object.
    """
    raw = line.encode("utf-8") if isinstance(line, str) else bytes(line)
    raw = raw.rstrip(b"\r\n")
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise StreamDecodeError(raw, str(exc)) from exc
    if not isinstance(data, dict):
        raise StreamDecodeError(raw, "expected a JSON object")

    message = data.get("message")
    if isinstance(message, dict):
        return _classify_message(raw, message)

    event_type = str(data.get("type") or "")
    if event_type == "init":
        return InitEvent(
            raw,
            init=InitContent(
                session_id=_str(data.get("session_id")),
                model=_str(data.get("model")),
                cwd=_str(data.get("cwd")),
                tools=_count(data.get("tools")),
                mcp_servers=_count(data.get("mcp_servers")),
            ),
        )
    if event_type == "result":
        return ResultEvent(
            raw,
            result=ResultContent(
                session_id=_str(data.get("session_id")),
                cost_usd=_float(data.get("cost_usd", data.get("total_cost_usd"))),
                duration_ms=_count(data.get("duration_ms")),
                duration_api_ms=_count(data.get("duration_api_ms")),
                num_turns=_count(data.get("num_turns")),
                usage=Usage.from_dict(data.get("usage")),
                result=_str(data.get("result")),
                is_sub_agent=bool(data.get("is_sub_agent")),
            ),
        )
    if event_type == "error":
        return ErrorEvent(raw, error=_error_content(data.get("error")))
    if event_type == "system":
        return SystemEvent(
            raw,
            system=SystemContent(subtype=_str(data.get("subtype")), message=_str(data.get("message"))),
        )

    delta_text = _delta_text(data)
    if delta_text is not None:
        return AssistantTextEvent(raw, text=delta_text)

    return UnknownEvent(raw, type=event_type or "unknown")


def iter_stream_events(lines: Iterable[Union[bytes, str]]) -> Iterator[StreamEvent]:
    """Decode an iterable of lines, skipping blanks.

    Raises:
        StreamDecodeError: On the first malformed line; iteration stops there.
    """
    for line in lines:
        event = parse_line(line)
        if event is not None:
            yield event


def _classify_message(raw: bytes, message: dict[str, Any]) -> StreamEvent:
    texts: list[str] = []
    tool_uses: list[ToolUseContent] = []
    tool_result: Optional[ToolResultContent] = None
    content = message.get("content")
    blocks = content if isinstance(content, list) else []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            texts.append(_str(block.get("text")))
        elif block_type == "tool_use":
            tool_uses.append(
                ToolUseContent(id=_str(block.get("id")), name=_str(block.get("name")), input=block.get("input"))
            )
        elif block_type == "tool_result":
            tool_result = ToolResultContent(
                tool_use_id=_str(block.get("tool_use_id") or block.get("id")),
                content=_result_text(block.get("content", block.get("text"))),
                is_error=bool(block.get("is_error")),
            )

    context = MessageContent(
        id=_str(message.get("id")),
        role=_str(message.get("role")),
        model=_str(message.get("model")),
        stop_reason=_str(message.get("stop_reason")),
        usage=Usage.from_dict(message.get("usage")),
    )
    if tool_uses:
        return ToolUseEvent(raw, tool_use=tool_uses[-1], message=context, tool_uses=tuple(tool_uses))
    if tool_result is not None:
        return ToolResultEvent(raw, tool_result=tool_result)
    return MessageEvent(
        raw,
        message=MessageContent(
            id=context.id,
            role=context.role,
            model=context.model,
            text="\n".join(texts),
            stop_reason=context.stop_reason,
            usage=context.usage,
        ),
    )


def _delta_text(data: dict[str, Any]) -> Optional[str]:
    """Find the text chunk in any of the partial-message shapes."""
    delta = data.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    for key in ("event", "content_block_delta"):
        wrapper = data.get(key)
        if not isinstance(wrapper, dict):
            continue
        inner = wrapper.get("delta")
        if isinstance(inner, dict) and isinstance(inner.get("text"), str):
            return inner["text"]
        if isinstance(wrapper.get("text"), str):
            return wrapper["text"]
    text = data.get("text")
    if isinstance(text, str):
        return text
    return None


def _error_content(value: Any) -> ErrorContent:
    if isinstance(value, dict):
        return ErrorContent(code=_str(value.get("code") or value.get("type")), message=_str(value.get("message")))
    if isinstance(value, str) and value:
        return ErrorContent(message=value)
    return ErrorContent(message="unknown error")


def _result_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [_str(item.get("text")) for item in value if isinstance(item, dict) and item.get("type") == "text"]
        return "\n".join(parts)
    return ""


def _count(value: Any) -> int:
    if isinstance(value, list):
        return len(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""
