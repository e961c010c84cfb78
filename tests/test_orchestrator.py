from __future__ import annotations

import time
from typing import Any, Optional

import pytest
from fakes import APPROVED, DEV_DONE, DONE, FakeAgent, FakeTurn, FakeVcs, text_event, tool_event

from ralph.agent.distill import Distiller
from ralph.agent.session import AgentExitError, AgentNotFoundError, SessionCancelledError
from ralph.cancel import CancelToken, RunCancelledError
from ralph.config import LoopSettings
from ralph.constants import DEFAULT_ERROR_BACKOFF_SECONDS, MIN_DIFF_BYTES
from ralph.runtime.domain.models import Plan, TurnSession
from ralph.runtime.events.models import ChangeCommitted, ExtendedModeTriggered, LoopEvent, MaxIterationsReached, Started
from ralph.runtime.orchestrator import IterationOrchestrator, LoopConfig, LoopError, PlanNotFoundError
from ralph.runtime.orchestrator.diff_window import SINGLE_CHANGE_CAVEAT
from ralph.runtime.storage.container import Container
from ralph.runtime.vcs.jj import VcsError

DEV_FINISHED = f"## Progress\nImplemented the exporter\n\n## Learnings\nUse csv.writer\n\n## Status\n{DEV_DONE}"
DEV_WORKING = "## Progress\nStarted the exporter\n\n## Status\nRUNNING RUNNING RUNNING"
REVIEW_OK = f"### Verdict\n{APPROVED}"
REVIEW_REJECT = "### Verdict\nChanges requested.\n\nREVIEWER_FEEDBACK: Missing error handling in export()"


def _orchestrator(
    container: Container,
    plan: Plan,
    agent: Any,
    vcs: Optional[FakeVcs] = None,
    *,
    cancel_token: Optional[CancelToken] = None,
    distiller: Optional[Distiller] = None,
    **options: Any,
) -> IterationOrchestrator:
    options.setdefault("error_backoff_seconds", 0.0)
    return IterationOrchestrator(
        LoopConfig(plan_id=plan.id, **options),
        container=container,
        agent=agent,
        vcs=vcs or FakeVcs(cumulative="+ exporter\n"),
        distiller=distiller,
        cancel_token=cancel_token,
    )


def _events(orchestrator: IterationOrchestrator) -> list[LoopEvent]:
    return list(orchestrator.events)


def _kinds(events: list[LoopEvent]) -> list[str]:
    return [event.kind for event in events]


def test_developer_and_reviewer_agree_in_one_iteration(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED), FakeTurn.say(REVIEW_OK)])
    orchestrator = _orchestrator(container, plan, agent)

    assert orchestrator.run() == "completed"

    kinds = _kinds(_events(orchestrator))
    assert orchestrator.iteration == 1
    assert kinds.count("both_done") == 1
    assert kinds.count("iteration_start") == 1
    assert kinds[-1] == "completed"
    stored = container.plans.get(plan.id)
    assert stored is not None and stored.status == "completed"
    sessions = container.sessions.for_plan(plan.id)
    assert [(s.iteration, s.role, s.status) for s in sessions] == [(1, "developer", "completed"), (1, "reviewer", "completed")]
    progress = container.progress.latest(plan.id)
    assert progress is not None and progress.content == "Implemented the exporter"


def test_reviewer_feedback_reaches_next_developer_prompt_once(container: Container, plan: Plan) -> None:
    seen: list[Optional[str]] = []

    class SnapshotAgent(FakeAgent):
        def run(self, prompt: str, **kwargs: Any):  # type: ignore[override]
            record = container.feedback.latest(plan.id)
            seen.append(record.content if record else None)
            return super().run(prompt, **kwargs)

    agent = SnapshotAgent(
        [
            FakeTurn.say(DEV_WORKING),
            FakeTurn.say(REVIEW_REJECT),
            FakeTurn.say(DEV_FINISHED),
            FakeTurn.say(REVIEW_OK),
        ]
    )
    orchestrator = _orchestrator(container, plan, agent, max_iterations=2)

    assert orchestrator.run() == "completed"

    assert "Missing error handling" not in agent.prompts[0]
    assert "Missing error handling in export()" in agent.prompts[2]
    assert seen[2] == "Missing error handling in export()"
    assert seen[3] is None
    assert container.feedback.latest(plan.id) is None
    feedback_events = [e for e in _events(orchestrator) if e.kind == "reviewer_feedback"]
    assert len(feedback_events) == 1


def test_extended_mode_raises_ceiling_once_then_stops(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED), FakeTurn.say(REVIEW_OK)], repeat=True)
    orchestrator = _orchestrator(container, plan, agent, extended_mode=True, max_iterations=15)

    assert orchestrator.run() == "stopped"

    events = _events(orchestrator)
    kinds = _kinds(events)
    assert orchestrator.extended_triggered is True
    assert orchestrator.max_iterations == 4
    assert kinds.count("both_done") == 1
    triggered = [e for e in events if isinstance(e, ExtendedModeTriggered)]
    assert [(e.iteration, e.new_ceiling) for e in triggered] == [(1, 4)]
    assert "completed" not in kinds
    reached = [e for e in events if isinstance(e, MaxIterationsReached)]
    assert len(reached) == 1 and reached[0].iteration == 4
    assert len(agent.prompts) == 8
    stored = container.plans.get(plan.id)
    assert stored is not None and stored.status == "stopped"


def test_missing_base_revision_reviews_single_change_with_caveat(container: Container, plan: Plan) -> None:
    vcs = FakeVcs(base=None, current="+ only the latest change\n")
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED), FakeTurn.say(REVIEW_OK)])
    orchestrator = _orchestrator(container, plan, agent, vcs)

    orchestrator.run()

    reviewer_prompt = agent.prompts[1]
    assert SINGLE_CHANGE_CAVEAT.strip() in reviewer_prompt
    assert "+ only the latest change" in reviewer_prompt
    assert orchestrator.base_revision is None
    stored = container.plans.get(plan.id)
    assert stored is not None and stored.base_revision is None


def test_base_revision_is_captured_and_used_for_cumulative_diff(container: Container, plan: Plan) -> None:
    vcs = FakeVcs(base="base-rev", cumulative="+ everything since start\n")
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED), FakeTurn.say(REVIEW_OK)])
    _orchestrator(container, plan, agent, vcs).run()

    stored = container.plans.get(plan.id)
    assert stored is not None and stored.base_revision == "base-rev"
    assert vcs.diff_calls == [("base-rev", "@")]
    assert "+ everything since start" in agent.prompts[1]
    assert SINGLE_CHANGE_CAVEAT.strip() not in agent.prompts[1]


def test_resume_continues_iteration_and_keeps_persisted_base(container: Container, plan: Plan) -> None:
    container.plans.update_base_revision(plan.id, "persisted-base")
    container.sessions.create(TurnSession(plan_id=plan.id, iteration=3, role="reviewer", status="completed"))
    vcs = FakeVcs(base="persisted-base", cumulative="+ work\n")
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED), FakeTurn.say(REVIEW_OK)])
    orchestrator = _orchestrator(container, plan, agent, vcs, max_iterations=5)

    assert orchestrator.run() == "completed"

    events = _events(orchestrator)
    started = [e for e in events if isinstance(e, Started)]
    assert started[0].resumed_from == 3
    assert orchestrator.iteration == 4
    new_sessions = [s for s in container.sessions.for_plan(plan.id) if s.iteration == 4]
    assert len(new_sessions) == 2
    assert orchestrator.base_revision == "persisted-base"


def test_ceiling_stops_run_without_agreement(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_WORKING), FakeTurn.say(REVIEW_REJECT)], repeat=True)
    orchestrator = _orchestrator(container, plan, agent, max_iterations=2)

    assert orchestrator.run() == "stopped"

    assert len(agent.prompts) == 4
    kinds = _kinds(_events(orchestrator))
    assert kinds.count("max_iterations") == 1
    assert kinds[-1] == "max_iterations"


def test_developer_done_is_suppressed_after_edits(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED, tools=["Edit"]), FakeTurn.say(REVIEW_OK)])
    orchestrator = _orchestrator(container, plan, agent, max_iterations=1)

    assert orchestrator.run() == "stopped"

    events = _events(orchestrator)
    suppressed = [e for e in events if e.kind == "done_suppressed"]
    assert len(suppressed) == 1
    assert getattr(suppressed[0], "tools") == ("Edit",)
    assert "developer_done" not in _kinds(events)
    assert "both_done" not in _kinds(events)
    assert "The developer reports the plan as complete." not in agent.prompts[1]


def test_edit_gate_can_be_disabled(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED, tools=["Write"]), FakeTurn.say(REVIEW_OK)])
    orchestrator = _orchestrator(container, plan, agent, suppress_done_after_edits=False)
    assert orchestrator.run() == "completed"


def test_non_edit_tools_do_not_suppress_done(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED, tools=["Read", "Bash"]), FakeTurn.say(REVIEW_OK)])
    assert _orchestrator(container, plan, agent).run() == "completed"


def test_single_flow_completes_on_done_marker(container: Container, plan: Plan) -> None:
    vcs = FakeVcs()
    agent = FakeAgent([FakeTurn.say(f"## Progress\n- Wrote the exporter\n- Added tests\n\n## Status\n{DONE}")])
    distill_agent = FakeAgent([])
    orchestrator = _orchestrator(container, plan, agent, vcs, distiller=Distiller(distill_agent), flow="single")

    assert orchestrator.run() == "completed"

    kinds = _kinds(_events(orchestrator))
    assert "done" in kinds
    assert "both_done" not in kinds
    assert kinds.index("jj_new") < kinds.index("distilling") < kinds.index("jj_commit") < kinds.index("done")
    assert vcs.new_changes == 1
    assert vcs.commits == ["Complete implementation"]
    assert distill_agent.prompts == []
    sessions = container.sessions.for_plan(plan.id)
    assert [s.role for s in sessions] == ["single"]


def test_single_flow_commits_with_distilled_message(container: Container, plan: Plan) -> None:
    vcs = FakeVcs()
    agent = FakeAgent([FakeTurn.say("## Progress\nWrote the exporter\n\n## Status\nRUNNING RUNNING RUNNING")])
    distill_agent = FakeAgent([FakeTurn.say("```\nfeat: add CSV exporter\n```\n\nAdds export() with tests.")])
    orchestrator = _orchestrator(
        container, plan, agent, vcs, distiller=Distiller(distill_agent), flow="single", max_iterations=1
    )

    assert orchestrator.run() == "stopped"

    assert vcs.commits == ["feat: add CSV exporter"]
    assert "Wrote the exporter" in distill_agent.prompts[0]
    assert "RUNNING RUNNING RUNNING" in distill_agent.prompts[0]
    committed = [e for e in _events(orchestrator) if isinstance(e, ChangeCommitted)]
    assert [e.description for e in committed] == ["feat: add CSV exporter"]
    assert committed[0].message == "Committing: feat: add CSV exporter"


def test_single_flow_falls_back_when_distiller_cannot_run(container: Container, plan: Plan) -> None:
    vcs = FakeVcs()
    agent = FakeAgent([FakeTurn.say("## Progress\nWrote the exporter")])
    distill_agent = FakeAgent([FakeTurn(raises=AgentNotFoundError("claude"))])
    orchestrator = _orchestrator(
        container, plan, agent, vcs, distiller=Distiller(distill_agent), flow="single", max_iterations=1
    )

    assert orchestrator.run() == "stopped"

    assert vcs.commits == ["Update implementation"]
    assert "error" not in _kinds(_events(orchestrator))


def test_single_flow_commit_failure_is_reported_and_loop_continues(container: Container, plan: Plan) -> None:
    vcs = FakeVcs(commit_error=VcsError("jj commit failed: working copy is stale"))
    agent = FakeAgent([FakeTurn.say("## Progress\nWrote the exporter"), FakeTurn.say(f"## Status\n{DONE}")])
    distill_agent = FakeAgent([FakeTurn.say("feat: add CSV exporter")])
    orchestrator = _orchestrator(
        container, plan, agent, vcs, distiller=Distiller(distill_agent), flow="single", max_iterations=2
    )

    assert orchestrator.run() == "completed"

    errors = [e for e in _events(orchestrator) if e.kind == "error"]
    assert len(errors) == 2
    assert all(e.message.startswith("jj commit failed") for e in errors)
    assert getattr(errors[0], "error_type") == "VcsError"


def test_single_flow_edit_gate_suppresses_done(container: Container, plan: Plan) -> None:
    vcs = FakeVcs()
    agent = FakeAgent([FakeTurn.say(f"## Status\n{DONE}", tools=["MultiEdit"])])
    orchestrator = _orchestrator(
        container, plan, agent, vcs, distiller=Distiller(FakeAgent([])), flow="single", max_iterations=1
    )

    assert orchestrator.run() == "stopped"

    kinds = _kinds(_events(orchestrator))
    assert "done_suppressed" in kinds
    assert "done" not in kinds
    assert vcs.commits == ["Complete implementation"]


def test_launch_failure_is_absorbed_and_loop_continues(container: Container, plan: Plan) -> None:
    agent = FakeAgent(
        [
            FakeTurn(raises=AgentNotFoundError("claude")),
            FakeTurn.say(DEV_FINISHED),
            FakeTurn.say(REVIEW_OK),
        ]
    )
    orchestrator = _orchestrator(container, plan, agent, max_iterations=3)

    assert orchestrator.run() == "completed"

    events = _events(orchestrator)
    errors = [e for e in events if e.kind == "error"]
    assert len(errors) == 1
    assert getattr(errors[0], "error_type") == "AgentNotFoundError"
    assert orchestrator.iteration == 2
    failed = container.sessions.for_plan(plan.id)[0]
    assert failed.status == "failed"


def test_turn_exit_error_still_parses_output(container: Container, plan: Plan) -> None:
    agent = FakeAgent(
        [
            FakeTurn.say(DEV_FINISHED, error=AgentExitError(1, "crashed after writing")),
            FakeTurn.say(REVIEW_OK),
        ]
    )
    orchestrator = _orchestrator(container, plan, agent)

    assert orchestrator.run() == "completed"

    errors = [e for e in _events(orchestrator) if e.kind == "error"]
    assert len(errors) == 1
    developer = container.sessions.for_plan(plan.id)[0]
    assert developer.status == "failed"
    assert "crashed after writing" in (developer.error or "")
    assert "Implemented the exporter" in developer.output


def test_context_limit_cancels_turn_but_keeps_output(container: Container, plan: Plan) -> None:
    developer = FakeTurn(
        events=[tool_event("Read", input_tokens=150_000), text_event(DEV_FINISHED)],
        error=SessionCancelledError(),
    )
    agent = FakeAgent([developer, FakeTurn.say(REVIEW_OK)])
    orchestrator = _orchestrator(container, plan, agent)

    assert orchestrator.run() == "completed"

    kinds = _kinds(_events(orchestrator))
    assert kinds.count("context_limit") == 1
    assert "error" not in kinds
    assert agent.sessions[0].cancelled is True
    assert container.sessions.for_plan(plan.id)[0].status == "completed"


def test_cancellation_propagates_and_stops_plan(container: Container, plan: Plan) -> None:
    token = CancelToken()
    agent = FakeAgent([FakeTurn.say(DEV_WORKING)], on_event=lambda event: token.cancel())
    orchestrator = _orchestrator(container, plan, agent, cancel_token=token)

    with pytest.raises(RunCancelledError):
        orchestrator.run()

    assert orchestrator.events.closed
    assert len(agent.prompts) == 1
    stored = container.plans.get(plan.id)
    assert stored is not None and stored.status == "stopped"
    assert "error" not in _kinds(_events(orchestrator))


def test_team_mode_tags_developer_environment(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED), FakeTurn.say(REVIEW_OK)])
    _orchestrator(container, plan, agent, team_mode=True).run()

    developer_session = container.sessions.for_plan(plan.id)[0]
    env = agent.envs[0]
    assert env is not None
    assert env["CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"] == "1"
    assert env["RALPH_SESSION_ID"] == developer_session.id
    assert agent.envs[1] is None


def test_raw_events_are_recorded_per_session(container: Container, plan: Plan) -> None:
    agent = FakeAgent([FakeTurn.say(DEV_FINISHED, tools=["Read"]), FakeTurn.say(REVIEW_OK)])
    _orchestrator(container, plan, agent).run()

    developer_session = container.sessions.for_plan(plan.id)[0]
    recorded = container.raw_events.for_session(developer_session.id)
    assert [e.kind for e in recorded] == ["tool_use", "assistant_text"]


def test_unknown_plan_raises(container: Container) -> None:
    orchestrator = IterationOrchestrator(
        LoopConfig(plan_id="plan-missing"),
        container=container,
        agent=FakeAgent([]),
        vcs=FakeVcs(),
    )
    with pytest.raises(PlanNotFoundError):
        orchestrator.run()
    assert orchestrator.events.closed


def test_empty_plan_content_is_a_loop_error(container: Container) -> None:
    plan = container.plans.upsert(Plan(title="Empty", content="   "))
    with pytest.raises(LoopError):
        _orchestrator(container, plan, FakeAgent([])).run()


def test_loop_config_from_settings_ignores_unset_overrides() -> None:
    settings = LoopSettings(max_iterations=9, suppress_done_after_edits=False)
    config = LoopConfig.from_settings("p1", settings, max_iterations=None, team_mode=True)
    assert config.max_iterations == 9
    assert config.team_mode is True
    assert config.suppress_done_after_edits is False


def test_loop_config_rejects_diff_ceiling_below_minimum() -> None:
    with pytest.raises(ValueError):
        LoopConfig(plan_id="p1", max_diff_bytes=100)


def test_smallest_diff_ceiling_still_reaches_reviewer(container: Container, plan: Plan) -> None:
    turns = [FakeTurn.say(DEV_WORKING), FakeTurn.say(REVIEW_REJECT)] * 2
    agent = FakeAgent(turns + [FakeTurn.say(DEV_FINISHED), FakeTurn.say(REVIEW_OK)])
    vcs = FakeVcs(cumulative="+ exporter\n" * 500)
    orchestrator = _orchestrator(container, plan, agent, vcs, max_iterations=3, max_diff_bytes=MIN_DIFF_BYTES)

    assert orchestrator.run() == "completed"

    assert "error" not in _kinds(_events(orchestrator))
    assert len(agent.prompts) == 6
    assert "diff truncated" in agent.prompts[1]


def test_repeated_failures_in_extended_mode_back_off_until_cancelled(container: Container, plan: Plan) -> None:
    token = CancelToken()

    class MissingAgent(FakeAgent):
        def run(self, prompt: str, **kwargs: Any) -> Any:  # type: ignore[override]
            self.prompts.append(prompt)
            if len(self.prompts) >= 3:
                token.cancel()
            raise AgentNotFoundError("claude")

    agent = MissingAgent([])
    orchestrator = _orchestrator(
        container,
        plan,
        agent,
        cancel_token=token,
        extended_mode=True,
        max_iterations=1,
        error_backoff_seconds=0.05,
    )

    started = time.monotonic()
    with pytest.raises(RunCancelledError):
        orchestrator.run()
    elapsed = time.monotonic() - started

    assert len(agent.prompts) == 3
    assert elapsed >= 0.1
    errors = [e for e in _events(orchestrator) if e.kind == "error"]
    assert [getattr(e, "error_type") for e in errors] == ["AgentNotFoundError"] * 3
    stored = container.plans.get(plan.id)
    assert stored is not None and stored.status == "stopped"


def test_loop_config_carries_backoff_from_settings() -> None:
    config = LoopConfig.from_settings("p1", LoopSettings(error_backoff_seconds=0.5))
    assert config.error_backoff_seconds == 0.5
    assert LoopConfig(plan_id="p1").error_backoff_seconds == DEFAULT_ERROR_BACKOFF_SECONDS
