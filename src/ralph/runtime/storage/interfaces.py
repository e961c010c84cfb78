"""Repository interfaces for plan, session and note persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.models import NoteRecord, Plan, PlanStatus, RawEvent, ReviewerFeedback, TurnSession


class PlanRepository(ABC):
    """Persistence contract for plans."""
    @abstractmethod
    def list(self) -> List[Plan]:
        """List every persisted plan.

        Returns:
            List[Plan]: All plans, oldest first.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, plan_id: str) -> Optional[Plan]:
        """Fetch a plan by id, or ``None`` when no record exists.

        Args:
            plan_id (str): Identifier for the target plan.

        Returns:
            Optional[Plan]: Requested plan when available; otherwise `None`.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, plan: Plan) -> Plan:
        """Create or update a plan.

        Args:
            plan (Plan): Plan model to persist.

        Returns:
            Plan: Persisted plan after the write.
        """
        raise NotImplementedError

    @abstractmethod
    def update_status(self, plan_id: str, status: PlanStatus) -> Optional[Plan]:
        """Set the lifecycle status of a plan.

        Args:
            plan_id (str): Identifier for the target plan.
            status (PlanStatus): New lifecycle status.

        Returns:
            Optional[Plan]: Updated plan, or `None` when the plan does not exist.
        """
        raise NotImplementedError

    @abstractmethod
    def update_base_revision(self, plan_id: str, revision: str) -> Optional[Plan]:
        """Record the base revision of a plan.

        The first recorded value wins; later calls leave it unchanged.

        Args:
            plan_id (str): Identifier for the target plan.
            revision (str): VCS revision captured at first run.

        Returns:
            Optional[Plan]: Updated plan, or `None` when the plan does not exist.
        """
        raise NotImplementedError


class SessionRepository(ABC):
    """Persistence contract for turn sessions."""
    @abstractmethod
    def create(self, session: TurnSession) -> TurnSession:
        raise NotImplementedError

    @abstractmethod
    def complete(
        self,
        session_id: str,
        *,
        output: str,
        status: str = "completed",
        error: Optional[str] = None,
    ) -> Optional[TurnSession]:
        """Finalize a session with its collected output.

        Args:
            session_id (str): Identifier for the target session.
            output (str): Collected agent text for the turn.
            status (str): Final status, ``completed`` or ``failed``.
            error (Optional[str]): Failure description when the turn failed.

        Returns:
            Optional[TurnSession]: Updated session, or `None` when it does not exist.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, session_id: str) -> Optional[TurnSession]:
        raise NotImplementedError

    @abstractmethod
    def for_plan(self, plan_id: str) -> List[TurnSession]:
        """List the sessions of a plan ordered by iteration, then start time."""
        raise NotImplementedError

    @abstractmethod
    def latest_for_plan(self, plan_id: str) -> Optional[TurnSession]:
        """Return the session with the highest iteration number for a plan."""
        raise NotImplementedError


class NoteRepository(ABC):
    """Append-only progress or learnings history."""
    @abstractmethod
    def create(self, note: NoteRecord) -> NoteRecord:
        raise NotImplementedError

    @abstractmethod
    def latest(self, plan_id: str) -> Optional[NoteRecord]:
        """Return the most recently written note of a plan, if any."""
        raise NotImplementedError

    @abstractmethod
    def history(self, plan_id: str) -> List[NoteRecord]:
        raise NotImplementedError


class FeedbackRepository(ABC):
    """Outstanding reviewer feedback, read once then cleared."""
    @abstractmethod
    def create(self, feedback: ReviewerFeedback) -> ReviewerFeedback:
        raise NotImplementedError

    @abstractmethod
    def latest(self, plan_id: str) -> Optional[ReviewerFeedback]:
        raise NotImplementedError

    @abstractmethod
    def clear(self, plan_id: str) -> int:
        """Delete all outstanding feedback of a plan.

        Args:
            plan_id (str): Identifier for the target plan.

        Returns:
            int: Number of records removed.
        """
        raise NotImplementedError


class RawEventRepository(ABC):
    """Append-only audit log of decoded protocol events."""
    @abstractmethod
    def append(self, event: RawEvent) -> RawEvent:
        raise NotImplementedError

    @abstractmethod
    def for_session(self, session_id: str, *, limit: Optional[int] = None) -> List[RawEvent]:
        """Read the events of one session in sequence order.

        Args:
            session_id (str): Identifier for the target session.
            limit (Optional[int]): Keep only the newest ``limit`` events when set.

        Returns:
            List[RawEvent]: Events ordered by ``seq``.
        """
        raise NotImplementedError
