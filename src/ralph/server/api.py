"""FastAPI app wiring for observing and controlling iteration runs."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional, cast

from fastapi import FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import RalphConfig, load_config
from ..runtime.domain.models import Plan, plan_title
from ..runtime.events.ws import WebSocketHub
from ..runtime.orchestrator import PlanNotFoundError
from ..runtime.storage import Container
from .runs import AgentFactory, DistillerFactory, RunConflictError, RunManager, VcsFactory
from .schemas import CreatePlanRequest, RunStatusResponse, StartRunRequest


def create_app(
    project_dir: Optional[Path] = None,
    *,
    config: Optional[RalphConfig] = None,
    agent_factory: Optional[AgentFactory] = None,
    vcs_factory: Optional[VcsFactory] = None,
    distiller_factory: Optional[DistillerFactory] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir (Optional[Path]): Project whose ``.ralph`` state is served.
            Defaults to the current directory.
        config (Optional[RalphConfig]): Runtime configuration. Loaded from the
            usual locations when omitted.
        agent_factory (Optional[AgentFactory]): Builds the agent client for each run.
        vcs_factory (Optional[VcsFactory]): Builds the VCS client for each run.
        distiller_factory (Optional[DistillerFactory]): Builds the commit-message
            distiller used by single-flow runs.
        enable_cors (bool): Whether to install permissive CORS middleware for browser
            clients.

    Returns:
        FastAPI: Configured application with the container, websocket hub and
        run manager stored on ``app.state``.
    """
    resolved = Path(project_dir or Path.cwd()).resolve()
    container = Container(resolved)
    hub = WebSocketHub()
    runs = RunManager(
        container,
        config or load_config(project_dir=resolved),
        hub=hub,
        agent_factory=agent_factory,
        vcs_factory=vcs_factory,
        distiller_factory=distiller_factory,
    )
    hub.backlog = runs.recent_events

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        try:
            yield
        finally:
            cast(RunManager, app.state.runs).shutdown(timeout=10.0)

    app = FastAPI(
        title="Ralph",
        description="Developer/reviewer iteration loop for coding agents",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.container = container
    app.state.hub = hub
    app.state.runs = runs

    def _plan_or_404(plan_id: str) -> Plan:
        plan = container.plans.get(plan_id)
        if plan is None:
            raise HTTPException(status_code=404, detail=f"Plan not found: {plan_id}")
        return plan

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status for process-level health checks."""
        return {"status": "ok", "version": __version__}

    @app.get("/api/plans")
    async def list_plans() -> dict[str, Any]:
        """List every plan known to the project, newest first."""
        plans = sorted(container.plans.list(), key=lambda p: p.created_at, reverse=True)
        return {"plans": [plan.to_dict() for plan in plans]}

    @app.post("/api/plans", status_code=201)
    async def create_plan(body: CreatePlanRequest) -> dict[str, Any]:
        """Register a plan so it can be run.

        Args:
            body: Plan content with an optional title.

        Returns:
            A payload containing the stored plan.
        """
        plan = Plan(title=body.title or plan_title(body.content), content=body.content, source=body.source)
        return {"plan": container.plans.upsert(plan).to_dict()}

    @app.get("/api/plans/{plan_id}")
    async def get_plan(plan_id: str) -> dict[str, Any]:
        """Return one plan together with its latest notes and outstanding feedback."""
        plan = _plan_or_404(plan_id)
        progress = container.progress.latest(plan_id)
        learnings = container.learnings.latest(plan_id)
        feedback = container.feedback.latest(plan_id)
        return {
            "plan": plan.to_dict(),
            "progress": progress.to_dict() if progress else None,
            "learnings": learnings.to_dict() if learnings else None,
            "feedback": feedback.to_dict() if feedback else None,
        }

    @app.get("/api/plans/{plan_id}/sessions")
    async def list_sessions(plan_id: str) -> dict[str, Any]:
        """List the plan's turn sessions in iteration order."""
        _plan_or_404(plan_id)
        return {"sessions": [s.to_dict() for s in container.sessions.for_plan(plan_id)]}

    @app.get("/api/sessions/{session_id}/events")
    async def session_events(session_id: str, limit: Optional[int] = Query(None, ge=1)) -> dict[str, Any]:
        """Return the raw protocol events recorded for one turn session.

        Args:
            session_id: Turn session identifier.
            limit: Optional cap on the number of most recent events returned.

        Returns:
            A payload with the session and its recorded events.

        Raises:
            HTTPException: If the session does not exist.
        """
        session = container.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        events = container.raw_events.for_session(session_id, limit=limit)
        return {"session": session.to_dict(), "events": [e.to_dict() for e in events]}

    @app.post("/api/plans/{plan_id}/run", status_code=202, response_model=RunStatusResponse)
    async def start_run(plan_id: str, body: Optional[StartRunRequest] = None) -> dict[str, Any]:
        """Start a background run for the plan.

        Raises:
            HTTPException: 404 for an unknown plan, 409 when a run is already active.
        """
        try:
            return runs.start(plan_id, body)
        except PlanNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except RunConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post("/api/plans/{plan_id}/stop")
    async def stop_run(plan_id: str) -> dict[str, Any]:
        """Cancel the plan's active run."""
        _plan_or_404(plan_id)
        return {"plan_id": plan_id, "stopping": runs.stop(plan_id)}

    @app.get("/api/plans/{plan_id}/run", response_model=RunStatusResponse)
    async def run_status(plan_id: str) -> dict[str, Any]:
        """Return the state of the plan's most recent run."""
        _plan_or_404(plan_id)
        return runs.status(plan_id)

    @app.get("/api/plans/{plan_id}/loop-events")
    async def loop_events(plan_id: str, limit: Optional[int] = Query(None, ge=1)) -> dict[str, Any]:
        """Return the buffered loop events of the plan's most recent run."""
        _plan_or_404(plan_id)
        return {"plan_id": plan_id, "events": runs.recent_events(plan_id, limit=limit)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Bridge websocket clients to the event hub."""
        await hub.handle_connection(websocket)

    return app
