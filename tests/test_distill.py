from __future__ import annotations

import pytest
from fakes import DEV_DONE, DONE, FakeAgent, FakeTurn, text_event

from ralph.agent.distill import DISTILL_PROMPT, Distiller, clean_message
from ralph.agent.session import AgentExitError, AgentNotFoundError
from ralph.cancel import CancelToken, RunCancelledError
from ralph.config import AgentSettings
from ralph.constants import DISTILL_INPUT_LIMIT, DONE_COMMIT_MESSAGE, FALLBACK_COMMIT_MESSAGE


def test_default_client_uses_small_model_for_one_turn() -> None:
    distiller = Distiller(settings=AgentSettings(command="my-claude", model="claude-opus-4", max_turns=40))
    args = distiller._client.build_args("x")
    assert args[0] == "my-claude"
    assert args[args.index("--model") + 1] == "haiku"
    assert args[args.index("--max-turns") + 1] == "1"


def test_distilled_message_is_first_line_without_markers() -> None:
    agent = FakeAgent([FakeTurn(events=[text_event("fix: handle empty CSV rows "), text_event(f"{DEV_DONE}\nmore")])])
    message = Distiller(agent).distill("## Progress\nHandled empty rows")

    assert message == "fix: handle empty CSV rows"
    assert agent.prompts[0] == DISTILL_PROMPT.format(output="## Progress\nHandled empty rows")


def test_markers_are_removed_from_the_prompt() -> None:
    agent = FakeAgent([FakeTurn.say("chore: tidy")])
    Distiller(agent).distill(f"Worked on it\n{DEV_DONE}")
    assert DEV_DONE not in agent.prompts[0]
    assert "Worked on it" in agent.prompts[0]


def test_long_output_keeps_its_tail() -> None:
    agent = FakeAgent([FakeTurn.say("feat: export")])
    output = "a" * DISTILL_INPUT_LIMIT + "summary at the end"
    Distiller(agent).distill(output)
    assert "summary at the end" in agent.prompts[0]
    assert "a" * DISTILL_INPUT_LIMIT not in agent.prompts[0]


@pytest.mark.parametrize("output", ["", "   \n", DEV_DONE])
def test_empty_output_uses_fallback_without_calling_model(output: str) -> None:
    agent = FakeAgent([])
    assert Distiller(agent).distill(output) == FALLBACK_COMMIT_MESSAGE
    assert agent.prompts == []


def test_done_marker_short_circuits() -> None:
    agent = FakeAgent([])
    assert Distiller(agent).distill(f"## Status\n{DONE}") == DONE_COMMIT_MESSAGE
    assert agent.prompts == []


def test_launch_failure_uses_fallback() -> None:
    agent = FakeAgent([FakeTurn(raises=AgentNotFoundError("claude"))])
    assert Distiller(agent).distill("Wrote code") == FALLBACK_COMMIT_MESSAGE


def test_failed_session_keeps_partial_message() -> None:
    agent = FakeAgent([FakeTurn.say("feat: partial", error=AgentExitError(1, "boom"))])
    assert Distiller(agent).distill("Wrote code") == "feat: partial"


def test_failed_session_without_text_uses_fallback() -> None:
    agent = FakeAgent([FakeTurn(events=[], error=AgentExitError(1, "boom"))])
    assert Distiller(agent).distill("Wrote code") == FALLBACK_COMMIT_MESSAGE


def test_cancelled_run_propagates() -> None:
    token = CancelToken()
    token.cancel()

    class CancellingAgent(FakeAgent):
        def run(self, prompt, **kwargs):  # type: ignore[override]
            kwargs["cancel_token"].raise_if_cancelled()
            return super().run(prompt, **kwargs)

    with pytest.raises(RunCancelledError):
        Distiller(CancellingAgent([])).distill("Wrote code", cancel_token=token)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("\n\n  feat: add export  \nbody", "feat: add export"),
        ("```\nrefactor: split parser\n```", "refactor: split parser"),
        ("", ""),
        (DONE, ""),
    ],
)
def test_clean_message(text: str, expected: str) -> None:
    assert clean_message(text) == expected
