"""Iteration loop that drives a plan to completion through agent turns.

The dual flow runs a developer turn then a reviewer turn per iteration and
finishes when both agree. The single flow runs one combined turn per
iteration inside a fresh VCS change, commits it under a distilled message
and finishes on the generic done marker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Literal, Optional, Protocol, Type, cast

from ...agent.distill import Distiller
from ...cancel import CancelToken, RunCancelledError
from ...config import LoopSettings
from ...constants import (
    CONTEXT_LIMIT_PERCENT,
    DEFAULT_ERROR_BACKOFF_SECONDS,
    DEFAULT_MAX_DIFF_BYTES,
    DEFAULT_MAX_ITERATIONS,
    EXTENDED_MODE_EXTRA_ITERATIONS,
    MIN_DIFF_BYTES,
)
from ...parsing.agent_output import (
    DeveloperParseResult,
    ParseResult,
    ReviewerParseResult,
    parse,
    parse_agent_output,
    strip_markers,
)
from ...prompts import build_developer_prompt, build_reviewer_prompt, build_single_prompt
from ..domain.models import NoteRecord, Plan, PlanStatus, ReviewerFeedback
from ..events.models import (
    BothDone,
    ChangeCommitted,
    ChangeStarted,
    Completed,
    DeveloperDone,
    Distilling,
    Done,
    DoneSuppressed,
    ExtendedModeTriggered,
    IterationEnded,
    IterationStarted,
    LoopErrorEvent,
    LoopEvent,
    MaxIterationsReached,
    PromptBuilt,
    ReviewerApproved,
    ReviewerFeedbackGiven,
    Started,
)
from ..events.stream import EventStream
from ..storage.container import Container
from ..vcs.jj import VcsError
from .diff_window import build_review_diff
from .turns import AgentRunner, TurnContext, TurnOutcome, best_effort, run_turn

logger = logging.getLogger(__name__)

Flow = Literal["dual", "single"]


class LoopError(Exception):
    """Unrecoverable control error, such as unreadable plan or session state."""


class PlanNotFoundError(LoopError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"plan not found: {plan_id}")
        self.plan_id = plan_id


class VersionControl(Protocol):
    def current_change_id(self) -> str: ...

    def parent_revision_of(self, revision: str) -> str: ...

    def diff(self, from_rev: Optional[str] = None, to_rev: Optional[str] = None) -> str: ...

    def show_current_change(self) -> str: ...

    def new_change(self, description: str = "") -> str: ...

    def commit(self, description: str) -> None: ...


class CommitMessageWriter(Protocol):
    def distill(self, output: str, *, cancel_token: Optional[CancelToken] = None) -> str: ...


@dataclass(frozen=True)
class LoopConfig:
    """Per-run options.

    Attributes:
        plan_id: Plan to drive.
        max_iterations: Iteration ceiling.
        extended_mode: On the first developer/reviewer agreement, grant a few
            more iterations instead of finishing.
        team_mode: Tell the developer agent it may coordinate a team.
        flow: ``"dual"`` (developer then reviewer) or ``"single"``.
        max_diff_bytes: Byte ceiling for the reviewer diff; at least
            ``MIN_DIFF_BYTES``.
        context_limit_percent: Context usage that ends a turn early.
        suppress_done_after_edits: Ignore a done signal from a turn that edited files.
        error_backoff_seconds: Pause after a failed iteration before the next
            one starts; cancellation cuts it short.
    """

    plan_id: str
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    extended_mode: bool = False
    team_mode: bool = False
    flow: Flow = "dual"
    max_diff_bytes: int = DEFAULT_MAX_DIFF_BYTES
    context_limit_percent: float = CONTEXT_LIMIT_PERCENT
    suppress_done_after_edits: bool = True
    error_backoff_seconds: float = DEFAULT_ERROR_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if self.max_diff_bytes < MIN_DIFF_BYTES:
            raise ValueError(f"max_diff_bytes must be at least {MIN_DIFF_BYTES}, got {self.max_diff_bytes}")

    @classmethod
    def from_settings(cls, plan_id: str, settings: LoopSettings, **overrides: Any) -> "LoopConfig":
        base = cls(
            plan_id=plan_id,
            max_iterations=settings.max_iterations,
            max_diff_bytes=settings.max_diff_bytes,
            context_limit_percent=settings.context_limit_percent,
            suppress_done_after_edits=settings.suppress_done_after_edits,
            error_backoff_seconds=settings.error_backoff_seconds,
        )
        return replace(base, **{k: v for k, v in overrides.items() if v is not None})


class IterationOrchestrator:
    """Drive one plan through iterations of agent turns.

    Example:
        orchestrator = IterationOrchestrator(
            LoopConfig(plan_id=plan.id),
            container=Container(project_dir),
            agent=AgentClient(settings.agent, cwd=project_dir),
            vcs=JJClient(project_dir),
            distiller=Distiller(settings=settings.agent, cwd=project_dir),
        )
        status = orchestrator.run()
    """

    def __init__(
        self,
        config: LoopConfig,
        *,
        container: Container,
        agent: AgentRunner,
        vcs: VersionControl,
        distiller: Optional[CommitMessageWriter] = None,
        stream: Optional[EventStream] = None,
        cancel_token: Optional[CancelToken] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self._container = container
        self._agent = agent
        self._vcs = vcs
        self._distiller = distiller
        self.events = stream or EventStream()
        self._token = cancel_token or CancelToken()
        self._log = logger or logging.getLogger(__name__)
        self._plan: Optional[Plan] = None
        self._base_revision: Optional[str] = None
        self._iteration = 0
        self._ceiling = config.max_iterations
        self._extended_triggered = False

    @property
    def iteration(self) -> int:
        return self._iteration

    @property
    def max_iterations(self) -> int:
        return self._ceiling

    @property
    def extended_triggered(self) -> bool:
        return self._extended_triggered

    @property
    def base_revision(self) -> Optional[str]:
        return self._base_revision

    @property
    def cancel_token(self) -> CancelToken:
        return self._token

    def cancel(self) -> None:
        self._token.cancel()

    def _event(self, cls: Type[LoopEvent], **fields: Any) -> LoopEvent:
        fields.setdefault("iteration", self._iteration)
        fields.setdefault("max_iterations", self._ceiling)
        return cls(**fields)

    def _emit(self, cls: Type[LoopEvent], **fields: Any) -> None:
        self.events.emit(self._event(cls, **fields))

    def _set_status(self, status: PlanStatus) -> None:
        best_effort(self._log, f"mark plan {status}", self._container.plans.update_status, self.config.plan_id, status)

    def run(self) -> PlanStatus:
        """Run until the plan completes or the ceiling is exceeded.

        Returns:
            PlanStatus: ``"completed"`` or ``"stopped"``.

        Raises:
            PlanNotFoundError: If the plan does not exist.
            LoopError: If plan or session state cannot be read.
            RunCancelledError: If the run was cancelled or its deadline passed.
        """
        try:
            self._start()
            while True:
                self._token.raise_if_cancelled()
                self._iteration += 1
                ceiling_active = not (self.config.extended_mode and not self._extended_triggered)
                if ceiling_active and self._iteration > self._ceiling:
                    self._emit(
                        MaxIterationsReached,
                        iteration=self._iteration - 1,
                        message=f"Reached max iterations ({self._ceiling})",
                    )
                    self._set_status("stopped")
                    return "stopped"
                try:
                    if self.config.flow == "single":
                        finished = self._run_single_iteration()
                    else:
                        finished = self._run_dual_iteration()
                except RunCancelledError:
                    raise
                except Exception as exc:
                    self._log.error("Iteration %d failed: %s", self._iteration, exc, exc_info=True)
                    self._emit(LoopErrorEvent, message=str(exc), error_type=type(exc).__name__)
                    self._back_off()
                    continue
                if finished:
                    return "completed"
        except RunCancelledError:
            self._log.info("Run for plan %s cancelled at iteration %d", self.config.plan_id, self._iteration)
            if self._plan is not None:
                self._set_status("stopped")
            raise
        finally:
            self.events.close()

    def _back_off(self) -> None:
        # Cancellation ends the pause early.
        if self.config.error_backoff_seconds > 0 and self._token.wait(self.config.error_backoff_seconds):
            self._token.raise_if_cancelled()

    def _start(self) -> None:
        plan_id = self.config.plan_id
        try:
            plan = self._container.plans.get(plan_id)
            latest = self._container.sessions.latest_for_plan(plan_id)
        except Exception as exc:
            raise LoopError(f"failed to load state for plan {plan_id}: {exc}") from exc
        if plan is None:
            raise PlanNotFoundError(plan_id)
        if not plan.content.strip():
            raise LoopError(f"plan {plan_id} has no content")
        self._plan = plan
        self._iteration = latest.iteration if latest is not None else 0

        if self.config.flow == "dual":
            self._base_revision = plan.base_revision or self._capture_base_revision()

        self._set_status("running")
        self._emit(Started, plan_id=plan_id, resumed_from=self._iteration, message="Loop started")

    def _capture_base_revision(self) -> Optional[str]:
        try:
            revision = self._vcs.parent_revision_of(self._vcs.current_change_id())
        except VcsError as exc:
            self._log.warning("Could not capture base revision: %s", exc)
            return None
        best_effort(
            self._log,
            "store base revision",
            self._container.plans.update_base_revision,
            self.config.plan_id,
            revision,
        )
        return revision

    def _turn_context(self) -> TurnContext:
        return TurnContext(
            agent=self._agent,
            container=self._container,
            emit=self.events.emit,
            plan_id=self.config.plan_id,
            iteration=self._iteration,
            max_iterations=self._ceiling,
            cancel_token=self._token,
            context_limit_percent=self.config.context_limit_percent,
            log=self._log,
        )

    def _latest_note(self, kind: str) -> str:
        repo = self._container.progress if kind == "progress" else self._container.learnings
        record = best_effort(self._log, f"load {kind}", repo.latest, self.config.plan_id)
        return record.content if record is not None else ""

    def _store_notes(self, session_id: str, result: ParseResult) -> None:
        for kind, text in (("progress", result.progress), ("learnings", result.learnings)):
            content = strip_markers(text)
            if not content:
                continue
            repo = self._container.progress if kind == "progress" else self._container.learnings
            note = NoteRecord(plan_id=self.config.plan_id, session_id=session_id, content=content)
            best_effort(self._log, f"store {kind}", repo.create, note)

    def _gate_done(self, done: bool, outcome: TurnOutcome) -> bool:
        if not done or not outcome.edited_files or not self.config.suppress_done_after_edits:
            return done
        tools = tuple(dict.fromkeys(outcome.edit_tools))
        self._log.info("Ignoring %s done signal: turn edited files with %s", outcome.role, ", ".join(tools))
        self._emit(
            DoneSuppressed,
            role=outcome.role,
            tools=tools,
            message="Done signal ignored because files were edited this turn",
        )
        return False

    def _complete(self) -> bool:
        self._set_status("completed")
        self._emit(IterationEnded, message=f"Completed iteration {self._iteration}")
        self._emit(Completed, message="Plan completed")
        return True

    def _run_dual_iteration(self) -> bool:
        assert self._plan is not None
        plan_id = self.config.plan_id
        self._emit(IterationStarted, message=f"Starting iteration {self._iteration}")

        progress = self._latest_note("progress")
        learnings = self._latest_note("learnings")
        outstanding = best_effort(self._log, "load reviewer feedback", self._container.feedback.latest, plan_id)
        feedback = outstanding.content if outstanding is not None else ""

        ctx = self._turn_context()
        dev_prompt = build_developer_prompt(
            self._plan.content,
            progress,
            learnings,
            feedback,
            team_mode=self.config.team_mode,
        )
        self._emit(PromptBuilt, role="developer", prompt=dev_prompt, message="Developer prompt built")
        developer = run_turn(ctx, role="developer", prompt=dev_prompt, team_mode=self.config.team_mode)
        dev_result = cast(DeveloperParseResult, parse_agent_output(developer.text, "developer"))
        self._store_notes(developer.session_id, dev_result)
        if outstanding is not None:
            best_effort(self._log, "clear reviewer feedback", self._container.feedback.clear, plan_id)

        developer_done = self._gate_done(dev_result.signalled_done, developer)
        if developer_done:
            self._emit(DeveloperDone, message="Developer signalled done")

        self._token.raise_if_cancelled()
        diff = build_review_diff(
            self._vcs,
            self._base_revision,
            max_bytes=self.config.max_diff_bytes,
            log=self._log,
        )
        rev_prompt = build_reviewer_prompt(
            self._plan.content,
            strip_markers(dev_result.progress) or progress,
            strip_markers(dev_result.learnings) or learnings,
            diff,
            strip_markers(developer.text),
            developer_done,
        )
        self._emit(PromptBuilt, role="reviewer", prompt=rev_prompt, message="Reviewer prompt built")
        reviewer = run_turn(ctx, role="reviewer", prompt=rev_prompt)
        rev_result = cast(ReviewerParseResult, parse_agent_output(reviewer.text, "reviewer"))
        # A reviewer answer without sections is a verdict, not progress.
        if not rev_result.malformed:
            self._store_notes(reviewer.session_id, rev_result)

        approved = rev_result.approved
        if approved:
            self._emit(ReviewerApproved, message="Reviewer approved")
        else:
            if rev_result.feedback:
                record = ReviewerFeedback(plan_id=plan_id, session_id=reviewer.session_id, content=rev_result.feedback)
                best_effort(self._log, "store reviewer feedback", self._container.feedback.create, record)
                self._emit(ReviewerFeedbackGiven, feedback=rev_result.feedback, message="Reviewer requested changes")

        if developer_done and approved:
            if not self.config.extended_mode:
                self._emit(BothDone, message="Developer and reviewer agree the plan is done")
                return self._complete()
            if not self._extended_triggered:
                self._extended_triggered = True
                self._ceiling = self._iteration + EXTENDED_MODE_EXTRA_ITERATIONS
                self._emit(BothDone, message="Developer and reviewer agree the plan is done")
                self._emit(
                    ExtendedModeTriggered,
                    new_ceiling=self._ceiling,
                    message=f"Extended mode: continuing until iteration {self._ceiling}",
                )
            else:
                self._log.debug("Ignoring repeated agreement at iteration %d in extended mode", self._iteration)

        self._emit(IterationEnded, message=f"Completed iteration {self._iteration}")
        return False

    def _run_single_iteration(self) -> bool:
        assert self._plan is not None
        self._emit(IterationStarted, message=f"Starting iteration {self._iteration}")
        progress = self._latest_note("progress")
        learnings = self._latest_note("learnings")
        prompt = build_single_prompt(self._plan.content, progress, learnings)
        self._emit(PromptBuilt, role="single", prompt=prompt, message="Prompt built")

        self._emit(ChangeStarted, message="Creating new jj change")
        try:
            self._vcs.new_change()
        except VcsError as exc:
            self._log.warning("jj new failed: %s", exc)
            self._emit(LoopErrorEvent, message=f"jj new failed: {exc}", error_type=type(exc).__name__)

        outcome = run_turn(self._turn_context(), role="single", prompt=prompt, team_mode=self.config.team_mode)
        result = parse(outcome.text)
        self._store_notes(outcome.session_id, result)
        self._commit_change(outcome.text)

        if self._gate_done(result.is_done, outcome):
            self._emit(Done, message="Agent completed")
            return self._complete()
        self._emit(IterationEnded, message=f"Completed iteration {self._iteration}")
        return False

    def _commit_change(self, output: str) -> None:
        self._emit(Distilling, message="Distilling commit message")
        if self._distiller is None:
            self._distiller = Distiller(logger=self._log)
        message = self._distiller.distill(output, cancel_token=self._token)
        self._emit(ChangeCommitted, description=message, message=f"Committing: {message}")
        try:
            self._vcs.commit(message)
        except VcsError as exc:
            self._log.warning("jj commit failed: %s", exc)
            self._emit(LoopErrorEvent, message=f"jj commit failed: {exc}", error_type=type(exc).__name__)
