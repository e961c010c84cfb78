"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast

PlanStatus = Literal["pending", "running", "completed", "stopped"]
TurnRole = Literal["developer", "reviewer", "single"]
SessionStatus = Literal["running", "completed", "failed"]
_VALID_PLAN_STATUSES = {"pending", "running", "completed", "stopped"}
_VALID_TURN_ROLES = {"developer", "reviewer", "single"}
_VALID_SESSION_STATUSES = {"running", "completed", "failed"}


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def plan_title(content: str, fallback: str = "Untitled plan") -> str:
    """Derive a plan title from the first non-empty line of its content."""
    for line in content.splitlines():
        stripped = line.strip().lstrip("#").strip()
        if stripped:
            return stripped[:80]
    return fallback


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


@dataclass
class Plan:
    """A development plan driven to completion by the iteration loop.

    ``base_revision`` is captured once, on the first run, and never changes
    afterwards so resumed runs keep reviewing the full change set.
    """
    id: str = field(default_factory=lambda: _id("plan"))
    title: str = ""
    content: str = ""
    source: str = "prompt"
    status: PlanStatus = "pending"
    base_revision: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Serialize a plan to a dictionary payload."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        """Deserialize and normalize a plan from persisted data."""
        status = str(data.get("status") or "pending")
        if status not in _VALID_PLAN_STATUSES:
            status = "pending"
        base_revision = str(data.get("base_revision") or "").strip() or None
        return cls(
            id=str(data.get("id") or _id("plan")),
            title=str(data.get("title") or ""),
            content=str(data.get("content") or ""),
            source=str(data.get("source") or "prompt"),
            status=cast(PlanStatus, status),
            base_revision=base_revision,
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass
class TurnSession:
    """One developer, reviewer or single-agent invocation."""
    id: str = field(default_factory=lambda: _id("sess"))
    plan_id: str = ""
    iteration: int = 0
    role: TurnRole = "developer"
    prompt: str = ""
    output: str = ""
    status: SessionStatus = "running"
    error: Optional[str] = None
    started_at: str = field(default_factory=now_iso)
    finished_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize a turn session."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TurnSession":
        """Deserialize a turn session, coercing the iteration number."""
        role = str(data.get("role") or "developer")
        if role not in _VALID_TURN_ROLES:
            role = "developer"
        status = str(data.get("status") or "running")
        if status not in _VALID_SESSION_STATUSES:
            status = "failed"
        return cls(
            id=str(data.get("id") or _id("sess")),
            plan_id=str(data.get("plan_id") or ""),
            iteration=_int(data.get("iteration")),
            role=cast(TurnRole, role),
            prompt=str(data.get("prompt") or ""),
            output=str(data.get("output") or ""),
            status=cast(SessionStatus, status),
            error=(str(data.get("error")) if data.get("error") is not None else None),
            started_at=str(data.get("started_at") or now_iso()),
            finished_at=data.get("finished_at"),
        )


@dataclass
class NoteRecord:
    """A progress or learnings entry written after a turn."""
    id: str = field(default_factory=lambda: _id("note"))
    plan_id: str = ""
    session_id: str = ""
    content: str = ""
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NoteRecord":
        return cls(
            id=str(data.get("id") or _id("note")),
            plan_id=str(data.get("plan_id") or ""),
            session_id=str(data.get("session_id") or ""),
            content=str(data.get("content") or ""),
            created_at=str(data.get("created_at") or now_iso()),
        )


@dataclass
class ReviewerFeedback:
    """Outstanding rejection text, consumed by the next developer turn."""
    id: str = field(default_factory=lambda: _id("fb"))
    plan_id: str = ""
    session_id: str = ""
    content: str = ""
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReviewerFeedback":
        return cls(
            id=str(data.get("id") or _id("fb")),
            plan_id=str(data.get("plan_id") or ""),
            session_id=str(data.get("session_id") or ""),
            content=str(data.get("content") or ""),
            created_at=str(data.get("created_at") or now_iso()),
        )


@dataclass
class RawEvent:
    """One decoded protocol line kept for audit and replay."""
    session_id: str = ""
    seq: int = 0
    kind: str = "unknown"
    raw: str = ""
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawEvent":
        return cls(
            session_id=str(data.get("session_id") or ""),
            seq=_int(data.get("seq")),
            kind=str(data.get("kind") or "unknown"),
            raw=str(data.get("raw") or ""),
            created_at=str(data.get("created_at") or now_iso()),
        )
