"""Command-line entry point: run a plan through the iteration loop.

Usage:
  ralph PLAN.md
  ralph --prompt "Add a --json flag to the export command"
  ralph --resume plan-1a2b3c4d5e

Optional:
  --max-iterations 20      # iteration ceiling (default from config, 15)
  --extreme / -x           # keep going a few iterations after the first agreement
  --team / -t              # let the developer coordinate a team of agents
  --single                 # one combined agent per iteration instead of developer/reviewer
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional, Sequence, TextIO

from . import __version__
from .agent.distill import Distiller
from .agent.events import AssistantTextEvent, ToolUseEvent
from .agent.session import AgentClient
from .cancel import CancelToken, RunCancelledError
from .config import ConfigError, load_config
from .runtime.domain.models import Plan, plan_title
from .runtime.events.models import AgentOutput, AgentStream, LoopEvent, PromptBuilt
from .runtime.events.stream import EventStream
from .runtime.orchestrator import IterationOrchestrator, LoopConfig, LoopError
from .runtime.orchestrator.loop import CommitMessageWriter, VersionControl
from .runtime.orchestrator.turns import AgentRunner
from .runtime.storage import Container
from .runtime.vcs import JJClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr handler on the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Ralph - drive a coding agent through developer/reviewer iterations until a plan is done",
    )
    parser.add_argument("plan_file", nargs="?", type=Path, help="Markdown file holding the plan")
    parser.add_argument("--prompt", type=str, default=None, help="Use this text as the plan")
    parser.add_argument("--resume", metavar="PLAN_ID", default=None, help="Resume an existing plan")
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Iteration ceiling (default: from config, 15)",
    )
    parser.add_argument(
        "--extreme",
        "-x",
        action="store_true",
        help="Extended mode: continue a few iterations after the first developer/reviewer agreement",
    )
    parser.add_argument("--team", "-t", action="store_true", help="Allow the developer to coordinate agent teams")
    parser.add_argument("--single", action="store_true", help="Single-agent flow instead of developer/reviewer")
    parser.add_argument("--model", type=str, default=None, help="Agent model override")
    parser.add_argument("--max-turns", type=int, default=None, help="Agent turn ceiling per session")
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to a config.yaml")
    parser.add_argument("--timeout", type=float, default=None, help="Deadline for the whole run, in seconds")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"ralph {__version__}")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    sources = [args.plan_file is not None, args.prompt is not None, args.resume is not None]
    if sum(sources) != 1:
        parser.error("provide exactly one of PLAN_FILE, --prompt or --resume")
    if args.max_iterations is not None and args.max_iterations < 1:
        parser.error("--max-iterations must be at least 1")
    if args.max_turns is not None and args.max_turns < 1:
        parser.error("--max-turns must be at least 1")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")
    return args


def resolve_plan(container: Container, args: argparse.Namespace) -> Plan:
    """Load the plan to resume, or register a new one from a file or prompt.

    Raises:
        LoopError: If the plan to resume does not exist or the plan file is unreadable.
    """
    if args.resume:
        plan = container.plans.get(args.resume)
        if plan is None:
            raise LoopError(f"plan not found: {args.resume}")
        return plan
    if args.plan_file is not None:
        path = Path(args.plan_file).expanduser().resolve()
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise LoopError(f"cannot read plan file {path}: {exc}") from exc
        plan = Plan(title=plan_title(content, fallback=path.stem), content=content, source=str(path))
    else:
        plan = Plan(title=plan_title(args.prompt), content=args.prompt, source="prompt")
    if not plan.content.strip():
        raise LoopError("plan content is empty")
    return container.plans.upsert(plan)


def format_event(event: LoopEvent) -> Optional[str]:
    """Render one loop event for the terminal, or ``None`` to skip it."""
    if isinstance(event, AgentStream):
        inner = event.event
        if isinstance(inner, AssistantTextEvent):
            return inner.text
        if isinstance(inner, ToolUseEvent):
            return f"\n  [{event.role}] tool: {', '.join(inner.tool_names)}\n"
        return None
    if isinstance(event, (AgentOutput, PromptBuilt)):
        return None
    prefix = f"[{event.iteration}/{event.max_iterations}]" if event.iteration else "[ralph]"
    return f"\n{prefix} {event.message or event.kind}\n"


def print_events(stream: EventStream, out: TextIO) -> None:
    for event in stream:
        line = format_event(event)
        if line:
            out.write(line)
            out.flush()


def run(
    args: argparse.Namespace,
    *,
    out: TextIO = sys.stdout,
    agent: Optional[AgentRunner] = None,
    vcs: Optional[VersionControl] = None,
    distiller: Optional[CommitMessageWriter] = None,
) -> int:
    """Run the loop described by parsed ``args`` and return the exit code.

    ``agent``, ``vcs`` and ``distiller`` default to the real agent CLI and jj
    clients.
    """
    project_dir = Path(args.project_dir).expanduser().resolve()
    try:
        config = load_config(args.config, project_dir=project_dir)
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_ERROR
    config = config.with_overrides(
        model=args.model,
        max_turns=args.max_turns,
        max_iterations=args.max_iterations,
        log_level="DEBUG" if args.verbose else None,
    )
    configure_logging(config.log_level)

    container = Container(project_dir)
    try:
        plan = resolve_plan(container, args)
    except LoopError as exc:
        logger.error("%s", exc)
        return EXIT_ERROR
    out.write(f"Plan {plan.id}: {plan.title} (resume with --resume {plan.id})\n")

    token = CancelToken(timeout=args.timeout)
    stream = EventStream(config.loop.event_buffer_size)
    orchestrator = IterationOrchestrator(
        LoopConfig.from_settings(
            plan.id,
            config.loop,
            extended_mode=args.extreme,
            team_mode=args.team,
            flow="single" if args.single else "dual",
        ),
        container=container,
        agent=agent or AgentClient(config.agent, cwd=project_dir),
        vcs=vcs or JJClient(project_dir),
        distiller=distiller or Distiller(settings=config.agent, cwd=project_dir),
        stream=stream,
        cancel_token=token,
    )

    outcome: dict[str, Any] = {}

    def _work() -> None:
        try:
            outcome["status"] = orchestrator.run()
        except BaseException as exc:
            outcome["error"] = exc

    def _on_sigint(signum: int, frame: Any) -> None:
        out.write("\nInterrupted, stopping the current turn...\n")
        token.cancel()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    worker = threading.Thread(target=_work, name="ralph-loop", daemon=True)
    try:
        worker.start()
        print_events(stream, out)
        worker.join()
    finally:
        signal.signal(signal.SIGINT, previous)

    error = outcome.get("error")
    if isinstance(error, RunCancelledError):
        out.write(f"\nRun cancelled: {error}\n")
        return EXIT_CANCELLED
    if error is not None:
        logger.error("Run failed: %s", error)
        return EXIT_ERROR
    out.write(f"\nPlan {plan.id} {outcome.get('status')}\n")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    return run(parse_args(argv))


if __name__ == "__main__":
    sys.exit(main())
