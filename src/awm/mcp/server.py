"""MCP server exposing project administration and work submission tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from awm.config import Config, get_config
from awm.core import daemon as daemon_mod
from awm.core import intake as intake_mod
from awm.core.events import watch_for_event
from awm.core.state import StateStore
from awm.db.models import PROJECT_STATUSES


@dataclass
class AppContext:
    state: StateStore
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Set up the store. Each tool reloads it and mutating tools save on their own."""
    config = get_config()
    state = StateStore(config.data_dir)
    state.initialize()
    yield AppContext(state=state, config=config)


mcp = FastMCP("awm", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _state(ctx: Context) -> StateStore:
    """Reload the store from disk so tools never act on a stale snapshot."""
    state = _ctx(ctx).state
    state.load()
    return state


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def list_projects(ctx: Context, status: str | None = None) -> list[dict]:
    """List projects, optionally filtered by status (active, paused, completed, archived)."""
    projects = _state(ctx).get_all_projects()
    if status:
        projects = [p for p in projects if p.status == status]
    return [_project_to_dict(p) for p in projects]


@mcp.tool()
def get_project(ctx: Context, project_id: str) -> dict:
    """Get a project with its events and recent sessions."""
    state = _state(ctx)
    project = state.get_project(project_id)
    if not project:
        return {"error": f"Project not found: {project_id}"}
    result = _project_to_dict(project)
    result["events"] = [
        {"id": e.id, "type": e.type, "trigger": e.trigger, "priority": e.priority, "enabled": e.enabled}
        for e in state.get_events_for_project(project_id)
    ]
    result["recent_sessions"] = [
        _session_to_dict(s) for s in state.get_sessions_for_project(project_id)[-5:]
    ]
    return result


@mcp.tool()
def create_project(
    ctx: Context,
    name: str,
    description: str = "",
    goals: list[str] | None = None,
    context: str = "",
    next_steps: list[str] | None = None,
    repository: str | None = None,
) -> dict:
    """Create a new active project."""
    state = _state(ctx)
    project = state.create_project(
        name,
        description=description,
        goals=goals,
        context=context,
        next_steps=next_steps,
        repository=repository,
    )
    state.save()
    return _project_to_dict(project)


@mcp.tool()
def set_project_status(ctx: Context, project_id: str, status: str) -> dict:
    """Set a project's status. Only active projects receive work sessions."""
    if status not in PROJECT_STATUSES:
        return {"error": f"Invalid status: {status}. Valid: {', '.join(PROJECT_STATUSES)}"}
    state = _state(ctx)
    project = state.update_project(project_id, status=status)
    if not project:
        return {"error": f"Project not found: {project_id}"}
    state.save()
    return _project_to_dict(project)


@mcp.tool()
def update_project_context(
    ctx: Context,
    project_id: str,
    context: str | None = None,
    next_steps: list[str] | None = None,
    goals: list[str] | None = None,
) -> dict:
    """Update the context, goals or next steps fed into future work sessions."""
    changes = {
        k: v for k, v in {"context": context, "next_steps": next_steps, "goals": goals}.items()
        if v is not None
    }
    state = _state(ctx)
    project = state.update_project(project_id, **changes)
    if not project:
        return {"error": f"Project not found: {project_id}"}
    state.save()
    return _project_to_dict(project)


# ── Work Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def add_time_event(ctx: Context, project_id: str, schedule: str, priority: str = "medium") -> dict:
    """Schedule recurring work for a project with a cron expression (UTC).

    Takes effect the next time the daemon starts.
    """
    state = _state(ctx)
    if not state.get_project(project_id):
        return {"error": f"Project not found: {project_id}"}
    event = state.create_event("time", project_id, schedule, priority)
    try:
        watch_for_event(event)
    except ValueError as e:
        state.delete_event(event.id)
        return {"error": str(e)}
    state.save()
    return {"id": event.id, "project_id": project_id, "schedule": schedule, "priority": priority}


@mcp.tool()
def queue_work(ctx: Context, project_id: str, priority: str = "medium") -> dict:
    """Queue a work session for a project. The daemon admits it within a few seconds."""
    app = _ctx(ctx)
    app.state.load()
    if not app.state.get_project(project_id):
        return {"error": f"Project not found: {project_id}"}
    try:
        pending = intake_mod.queue_work(app.config.intake_file, project_id, priority, "ai-decision")
    except ValueError as e:
        return {"error": str(e)}
    return {
        "queued": True,
        "project_id": project_id,
        "priority": priority,
        "pending_requests": pending,
        "daemon_running": daemon_mod.read_pid(app.config) is not None,
    }


@mcp.tool()
def list_sessions(ctx: Context, project_id: str | None = None, status: str | None = None) -> list[dict]:
    """List work sessions, optionally filtered by project and status."""
    state = _state(ctx)
    sessions = state.get_sessions_for_project(project_id) if project_id else state.get_all_sessions()
    if status:
        sessions = [s for s in sessions if s.status == status]
    return [_session_to_dict(s) for s in sessions]


@mcp.tool()
def get_status(ctx: Context) -> dict:
    """Daemon and workload status."""
    app = _ctx(ctx)
    app.state.load()
    return {
        "daemon_running": daemon_mod.read_pid(app.config) is not None,
        "max_concurrent": app.config.max_concurrent_sessions,
        "projects": len(app.state.get_all_projects()),
        "running_sessions": sum(s.status == "running" for s in app.state.get_all_sessions()),
        "pending_requests": len(intake_mod.pending_requests(app.config.intake_file)),
    }


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_to_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "goals": p.goals,
        "context": p.context,
        "next_steps": p.next_steps,
        "hours_spent": round(p.hours_spent, 3),
        "repository": p.repository,
        "last_worked_at": p.last_worked_at.isoformat() if p.last_worked_at else None,
    }


def _session_to_dict(s) -> dict:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "status": s.status,
        "started_at": s.started_at.isoformat() if s.started_at else None,
        "completed_at": s.completed_at.isoformat() if s.completed_at else None,
        "duration": s.duration,
        "summary": s.summary,
        "outcome": s.outcome,
        "error": s.error,
    }
