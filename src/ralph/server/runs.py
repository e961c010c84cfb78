"""Background execution of orchestrator runs for the HTTP surface."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from ..agent.distill import Distiller
from ..agent.session import AgentClient
from ..cancel import CancelToken, DeadlineExceededError, RunCancelledError
from ..config import RalphConfig
from ..runtime.domain.models import now_iso
from ..runtime.events.stream import EventStream
from ..runtime.events.ws import WebSocketHub
from ..runtime.orchestrator import IterationOrchestrator, LoopConfig, PlanNotFoundError
from ..runtime.orchestrator.loop import CommitMessageWriter, VersionControl
from ..runtime.orchestrator.turns import AgentRunner
from ..runtime.storage import Container
from ..runtime.vcs import JJClient
from .schemas import StartRunRequest

logger = logging.getLogger(__name__)

AgentFactory = Callable[[RalphConfig, Path], AgentRunner]
VcsFactory = Callable[[Path], VersionControl]
DistillerFactory = Callable[[RalphConfig, Path], CommitMessageWriter]

RECENT_EVENT_LIMIT = 500


def default_agent_factory(config: RalphConfig, project_dir: Path) -> AgentRunner:
    return AgentClient(config.agent, cwd=project_dir)


def default_vcs_factory(project_dir: Path) -> VersionControl:
    return JJClient(project_dir)


def default_distiller_factory(config: RalphConfig, project_dir: Path) -> CommitMessageWriter:
    return Distiller(settings=config.agent, cwd=project_dir)


class RunConflictError(Exception):
    """A run is already active for the plan."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"plan {plan_id} already has an active run")
        self.plan_id = plan_id


@dataclass
class _Run:
    plan_id: str
    orchestrator: IterationOrchestrator
    recent: deque = field(default_factory=lambda: deque(maxlen=RECENT_EVENT_LIMIT))
    state: str = "running"
    error: Optional[str] = None
    started_at: str = field(default_factory=now_iso)
    finished_at: Optional[str] = None
    worker: Optional[threading.Thread] = None
    pump: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self.worker is not None and self.worker.is_alive()


class RunManager:
    """Start, stop and observe one orchestrator run per plan.

    Each run executes on its own thread. A pump thread drains the run's event
    stream into a bounded recent-events buffer and publishes every event on
    the ``loop`` websocket channel.
    """

    def __init__(
        self,
        container: Container,
        config: RalphConfig,
        *,
        hub: Optional[WebSocketHub] = None,
        agent_factory: Optional[AgentFactory] = None,
        vcs_factory: Optional[VcsFactory] = None,
        distiller_factory: Optional[DistillerFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.container = container
        self.config = config
        self.hub = hub
        self._agent_factory = agent_factory or default_agent_factory
        self._vcs_factory = vcs_factory or default_vcs_factory
        self._distiller_factory = distiller_factory or default_distiller_factory
        self._runs: dict[str, _Run] = {}
        self._lock = threading.RLock()
        self._log = logger or logging.getLogger(__name__)

    def start(self, plan_id: str, request: Optional[StartRunRequest] = None) -> dict[str, Any]:
        """Start a run for ``plan_id`` on a background thread.

        Raises:
            PlanNotFoundError: If the plan does not exist.
            RunConflictError: If the plan already has an active run.
        """
        request = request or StartRunRequest()
        if self.container.plans.get(plan_id) is None:
            raise PlanNotFoundError(plan_id)
        with self._lock:
            existing = self._runs.get(plan_id)
            if existing is not None and existing.active:
                raise RunConflictError(plan_id)

            config = self.config.with_overrides(
                model=request.model,
                max_turns=request.max_turns,
                max_iterations=request.max_iterations,
            )
            loop_config = LoopConfig.from_settings(
                plan_id,
                config.loop,
                extended_mode=request.extended_mode,
                team_mode=request.team_mode,
                flow=request.flow,
            )
            project_dir = self.container.project_dir
            orchestrator = IterationOrchestrator(
                loop_config,
                container=self.container,
                agent=self._agent_factory(config, project_dir),
                vcs=self._vcs_factory(project_dir),
                distiller=self._distiller_factory(config, project_dir),
                stream=EventStream(config.loop.event_buffer_size),
                cancel_token=CancelToken(timeout=request.timeout),
                logger=self._log,
            )
            run = _Run(plan_id=plan_id, orchestrator=orchestrator)
            run.worker = threading.Thread(target=self._execute, args=(run,), daemon=True, name=f"run-{plan_id}")
            run.pump = threading.Thread(target=self._pump, args=(run,), daemon=True, name=f"pump-{plan_id}")
            self._runs[plan_id] = run
            run.pump.start()
            run.worker.start()
        self._log.info("Started run for plan %s", plan_id)
        self._publish_run(run)
        return self.status(plan_id)

    def _execute(self, run: _Run) -> None:
        try:
            run.state = run.orchestrator.run()
        except DeadlineExceededError as exc:
            run.state, run.error = "cancelled", str(exc)
        except RunCancelledError:
            run.state = "cancelled"
        except Exception as exc:
            self._log.error("Run for plan %s failed: %s", run.plan_id, exc, exc_info=True)
            run.state, run.error = "failed", str(exc)
        finally:
            run.finished_at = now_iso()
        self._log.info("Run for plan %s finished: %s", run.plan_id, run.state)
        self._publish_run(run)

    def _pump(self, run: _Run) -> None:
        for event in run.orchestrator.events:
            payload = event.to_dict()
            run.recent.append(payload)
            if self.hub is not None:
                self.hub.publish_sync({"channel": "loop", "type": event.kind, "plan_id": run.plan_id, "payload": payload})

    def _publish_run(self, run: _Run) -> None:
        if self.hub is not None:
            self.hub.publish_sync({"channel": "runs", "type": run.state, "plan_id": run.plan_id, "payload": self.status(run.plan_id)})

    def stop(self, plan_id: str) -> bool:
        """Cancel the plan's active run. Returns ``False`` when nothing is running."""
        with self._lock:
            run = self._runs.get(plan_id)
        if run is None or not run.active:
            return False
        run.orchestrator.cancel()
        self._log.info("Stop requested for plan %s", plan_id)
        return True

    def status(self, plan_id: str) -> dict[str, Any]:
        with self._lock:
            run = self._runs.get(plan_id)
        if run is None:
            return {"plan_id": plan_id, "state": "idle"}
        orchestrator = run.orchestrator
        return {
            "plan_id": plan_id,
            "state": run.state,
            "iteration": orchestrator.iteration,
            "max_iterations": orchestrator.max_iterations,
            "extended_triggered": orchestrator.extended_triggered,
            "error": run.error,
            "dropped_events": orchestrator.events.dropped,
            "started_at": run.started_at,
            "finished_at": run.finished_at,
        }

    def recent_events(self, plan_id: str, *, limit: Optional[int] = None) -> list[dict[str, Any]]:
        with self._lock:
            run = self._runs.get(plan_id)
        if run is None:
            return []
        items = list(run.recent)
        return items[-limit:] if limit else items

    def wait(self, plan_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the plan's run and its pump finish. Returns ``False`` on timeout."""
        with self._lock:
            run = self._runs.get(plan_id)
        if run is None:
            return True
        for thread in (run.worker, run.pump):
            if thread is not None:
                thread.join(timeout=timeout)
                if thread.is_alive():
                    return False
        return True

    def shutdown(self, *, timeout: float = 10.0) -> None:
        """Cancel every active run and wait up to ``timeout`` seconds for each."""
        with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            if run.active:
                run.orchestrator.cancel()
        for run in runs:
            self.wait(run.plan_id, timeout=timeout)
