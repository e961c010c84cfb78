"""File-backed repository implementations for plan and turn state."""

from __future__ import annotations

import json
import os
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, List, Optional, TypeVar

from ...io_utils import FileLock, atomic_write_yaml, read_yaml
from ..domain.models import NoteRecord, Plan, PlanStatus, RawEvent, ReviewerFeedback, TurnSession, now_iso
from .interfaces import (
    FeedbackRepository,
    NoteRepository,
    PlanRepository,
    RawEventRepository,
    SessionRepository,
)

T = TypeVar("T")

STATE_SCHEMA_VERSION = 1


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        """Initialize the YamlCollectionRepo.

        Args:
            path (Path): YAML file path containing this repository collection.
            lock_path (Path): Lock file path used for cross-process synchronization.
            key (str): Top-level YAML key that stores serialized collection items.
            loader (Callable[[dict[str, Any]], T]): Callable converting raw dictionaries
                into domain models.
            dumper (Callable[[T], dict[str, Any]]): Callable converting domain models
                into dictionaries for persistence.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._key = key
        self._loader = loader
        self._dumper = dumper

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def load(self) -> list[T]:
        raw = read_yaml(self._path)
        if not isinstance(raw, dict):
            return []
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def save(self, items: list[T]) -> None:
        payload = {"version": STATE_SCHEMA_VERSION, self._key: [self._dumper(item) for item in items]}
        atomic_write_yaml(self._path, payload)

    def snapshot(self) -> list[T]:
        with self.locked():
            return self.load()

    def append(self, item: T) -> T:
        with self.locked():
            items = self.load()
            items.append(item)
            self.save(items)
        return item

    def update_one(self, match: Callable[[T], bool], change: Callable[[T], None]) -> Optional[T]:
        """Apply ``change`` to the first item matching ``match`` and persist."""
        with self.locked():
            items = self.load()
            for item in items:
                if match(item):
                    change(item)
                    self.save(items)
                    return item
        return None


class FilePlanRepository(PlanRepository):
    """YAML-backed plan repository with coarse file/process locking."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Plan](path, lock_path, "plans", loader=Plan.from_dict, dumper=lambda p: p.to_dict())

    def list(self) -> List[Plan]:
        return self._repo.snapshot()

    def get(self, plan_id: str) -> Optional[Plan]:
        for plan in self.list():
            if plan.id == plan_id:
                return plan
        return None

    def upsert(self, plan: Plan) -> Plan:
        """Insert or replace a plan by id, refreshing ``updated_at``."""
        with self._repo.locked():
            plans = self._repo.load()
            plan.updated_at = now_iso()
            for idx, existing in enumerate(plans):
                if existing.id == plan.id:
                    plans[idx] = plan
                    break
            else:
                plans.append(plan)
            self._repo.save(plans)
        return plan

    def update_status(self, plan_id: str, status: PlanStatus) -> Optional[Plan]:
        def change(plan: Plan) -> None:
            plan.status = status
            plan.updated_at = now_iso()

        return self._repo.update_one(lambda p: p.id == plan_id, change)

    def update_base_revision(self, plan_id: str, revision: str) -> Optional[Plan]:
        def change(plan: Plan) -> None:
            if not plan.base_revision:
                plan.base_revision = revision
                plan.updated_at = now_iso()

        return self._repo.update_one(lambda p: p.id == plan_id, change)


class FileSessionRepository(SessionRepository):
    """YAML-backed turn session repository."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[TurnSession](
            path,
            lock_path,
            "sessions",
            loader=TurnSession.from_dict,
            dumper=lambda s: s.to_dict(),
        )

    def create(self, session: TurnSession) -> TurnSession:
        return self._repo.append(session)

    def complete(
        self,
        session_id: str,
        *,
        output: str,
        status: str = "completed",
        error: Optional[str] = None,
    ) -> Optional[TurnSession]:
        final_status = status if status in {"completed", "failed"} else "completed"

        def change(session: TurnSession) -> None:
            session.output = output
            session.status = final_status  # type: ignore[assignment]
            session.error = error
            session.finished_at = now_iso()

        return self._repo.update_one(lambda s: s.id == session_id, change)

    def get(self, session_id: str) -> Optional[TurnSession]:
        for session in self._repo.snapshot():
            if session.id == session_id:
                return session
        return None

    def for_plan(self, plan_id: str) -> List[TurnSession]:
        sessions = [s for s in self._repo.snapshot() if s.plan_id == plan_id]
        # Stable sort keeps creation order within an iteration.
        return sorted(sessions, key=lambda s: s.iteration)

    def latest_for_plan(self, plan_id: str) -> Optional[TurnSession]:
        sessions = self.for_plan(plan_id)
        return sessions[-1] if sessions else None


class FileNoteRepository(NoteRepository):
    """YAML-backed append-only note history (progress or learnings)."""
    def __init__(self, path: Path, lock_path: Path, *, key: str) -> None:
        self._repo = _YamlCollectionRepo[NoteRecord](
            path,
            lock_path,
            key,
            loader=NoteRecord.from_dict,
            dumper=lambda n: n.to_dict(),
        )

    def create(self, note: NoteRecord) -> NoteRecord:
        return self._repo.append(note)

    def latest(self, plan_id: str) -> Optional[NoteRecord]:
        history = self.history(plan_id)
        return history[-1] if history else None

    def history(self, plan_id: str) -> List[NoteRecord]:
        return [n for n in self._repo.snapshot() if n.plan_id == plan_id]


class FileFeedbackRepository(FeedbackRepository):
    """YAML-backed reviewer feedback store."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[ReviewerFeedback](
            path,
            lock_path,
            "feedback",
            loader=ReviewerFeedback.from_dict,
            dumper=lambda f: f.to_dict(),
        )

    def create(self, feedback: ReviewerFeedback) -> ReviewerFeedback:
        return self._repo.append(feedback)

    def latest(self, plan_id: str) -> Optional[ReviewerFeedback]:
        items = [f for f in self._repo.snapshot() if f.plan_id == plan_id]
        return items[-1] if items else None

    def clear(self, plan_id: str) -> int:
        with self._repo.locked():
            items = self._repo.load()
            keep = [f for f in items if f.plan_id != plan_id]
            removed = len(items) - len(keep)
            if removed:
                self._repo.save(keep)
        return removed


class FileRawEventRepository(RawEventRepository):
    """JSONL-backed audit log of protocol events."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileRawEventRepository.

        Args:
            path (Path): JSONL file path where events are appended.
            lock_path (Path): Lock file path used while writing or reading events.
        """
        self._path = path
        self._lock = FileLock(lock_path)

    def append(self, event: RawEvent) -> RawEvent:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event.to_dict()) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        return event

    def for_session(self, session_id: str, *, limit: Optional[int] = None) -> List[RawEvent]:
        if not self._path.exists():
            return []
        selected: deque[RawEvent] = deque(maxlen=limit if limit and limit > 0 else None)
        with self._lock:
            with self._path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    try:
                        parsed = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(parsed, dict) and parsed.get("session_id") == session_id:
                        selected.append(RawEvent.from_dict(parsed))
        return sorted(selected, key=lambda e: e.seq)
