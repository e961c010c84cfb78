from __future__ import annotations

import io
from pathlib import Path

import pytest
from fakes import APPROVED, DEV_DONE, DONE, FakeAgent, FakeTurn, FakeVcs, text_event, tool_event

from ralph import cli
from ralph.agent.distill import Distiller
from ralph.runtime.domain.models import Plan
from ralph.runtime.events.models import AgentOutput, AgentStream, IterationStarted, PromptBuilt, Started
from ralph.runtime.orchestrator import LoopError
from ralph.runtime.storage.container import Container


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["plan.md", "--prompt", "do it"],
        ["--prompt", "do it", "--resume", "plan-1"],
        ["--prompt", "do it", "--max-iterations", "0"],
        ["--prompt", "do it", "--max-turns", "0"],
        ["--prompt", "do it", "--timeout", "-1"],
    ],
)
def test_parse_args_rejects_invalid_combinations(argv: list[str]) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(argv)


def test_parse_args_flags() -> None:
    args = cli.parse_args(["--prompt", "Add a flag", "-x", "-t", "--single", "--max-iterations", "4"])
    assert args.prompt == "Add a flag"
    assert args.extreme and args.team and args.single
    assert args.max_iterations == 4
    assert args.plan_file is None


def test_resolve_plan_from_file(tmp_path: Path, container: Container) -> None:
    plan_file = tmp_path / "export.md"
    plan_file.write_text("# Export rows\n\nDetails.", encoding="utf-8")
    plan = cli.resolve_plan(container, cli.parse_args([str(plan_file)]))
    assert plan.title == "Export rows"
    assert plan.source == str(plan_file.resolve())
    assert container.plans.get(plan.id) is not None


def test_resolve_plan_from_prompt_and_resume(container: Container) -> None:
    created = cli.resolve_plan(container, cli.parse_args(["--prompt", "Add a --json flag"]))
    assert created.source == "prompt"
    assert created.title == "Add a --json flag"
    resumed = cli.resolve_plan(container, cli.parse_args(["--resume", created.id]))
    assert resumed.id == created.id


def test_resolve_plan_errors(tmp_path: Path, container: Container) -> None:
    with pytest.raises(LoopError):
        cli.resolve_plan(container, cli.parse_args(["--resume", "plan-missing"]))
    with pytest.raises(LoopError):
        cli.resolve_plan(container, cli.parse_args([str(tmp_path / "missing.md")]))
    with pytest.raises(LoopError):
        cli.resolve_plan(container, cli.parse_args(["--prompt", "   "]))


def test_format_event() -> None:
    assert cli.format_event(AgentStream(role="developer", event=text_event("hello"))) == "hello"
    tool_line = cli.format_event(AgentStream(role="reviewer", event=tool_event("Read")))
    assert tool_line is not None and "[reviewer] tool: Read" in tool_line
    assert cli.format_event(AgentOutput(role="developer", output="x")) is None
    assert cli.format_event(PromptBuilt(role="developer", prompt="p")) is None
    assert cli.format_event(IterationStarted(iteration=2, max_iterations=5, message="Starting")) == "\n[2/5] Starting\n"
    assert cli.format_event(Started(message="Loop started")) == "\n[ralph] Loop started\n"


def test_run_with_scripted_agent(tmp_path: Path) -> None:
    agent = FakeAgent(
        [
            FakeTurn.say(f"## Progress\nDone the work\n\n## Status\n{DEV_DONE}"),
            FakeTurn.say(f"### Verdict\n{APPROVED}"),
        ]
    )
    out = io.StringIO()
    args = cli.parse_args(["--prompt", "Add a flag", "--project-dir", str(tmp_path)])

    assert cli.run(args, out=out, agent=agent, vcs=FakeVcs()) == cli.EXIT_OK

    text = out.getvalue()
    assert "resume with --resume plan-" in text
    assert "Developer and reviewer agree" in text
    assert text.rstrip().endswith("completed")
    plans = Container(tmp_path).plans.list()
    assert [p.status for p in plans] == ["completed"]


def test_run_unknown_resume_is_an_error(tmp_path: Path) -> None:
    args = cli.parse_args(["--resume", "plan-missing", "--project-dir", str(tmp_path)])
    assert cli.run(args, out=io.StringIO(), agent=FakeAgent([]), vcs=FakeVcs()) == cli.EXIT_ERROR


def test_run_cancelled_exits_130(tmp_path: Path) -> None:
    container = Container(tmp_path)
    plan = container.plans.upsert(Plan(title="t", content="do it"))
    holder: dict[str, object] = {}

    class CancellingAgent(FakeAgent):
        def run(self, prompt, **kwargs):  # type: ignore[override]
            holder["token"] = kwargs.get("cancel_token")
            return super().run(prompt, **kwargs)

    def cancel(event) -> None:
        holder["token"].cancel()  # type: ignore[attr-defined]

    agent = CancellingAgent([FakeTurn.say("## Progress\nstarted")], on_event=cancel)
    out = io.StringIO()
    args = cli.parse_args(["--resume", plan.id, "--project-dir", str(tmp_path)])

    assert cli.run(args, out=out, agent=agent, vcs=FakeVcs()) == cli.EXIT_CANCELLED
    assert "Run cancelled" in out.getvalue()
    stored = Container(tmp_path).plans.get(plan.id)
    assert stored is not None and stored.status == "stopped"


def test_run_single_flow_commits_each_iteration(tmp_path: Path) -> None:
    agent = FakeAgent([FakeTurn.say("## Progress\nAdded the flag"), FakeTurn.say(f"## Status\n{DONE}")])
    vcs = FakeVcs()
    distiller = Distiller(FakeAgent([FakeTurn.say("feat: add --json flag")]))
    out = io.StringIO()
    args = cli.parse_args(["--prompt", "Add a flag", "--single", "--project-dir", str(tmp_path)])

    assert cli.run(args, out=out, agent=agent, vcs=vcs, distiller=distiller) == cli.EXIT_OK

    assert vcs.new_changes == 2
    assert vcs.commits == ["feat: add --json flag", "Complete implementation"]
    assert "Committing: feat: add --json flag" in out.getvalue()
