"""HTTP API: webhook triggers, manual submissions and read-only status."""

import json

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from awm.core.scheduler import Scheduler
from awm.db.models import PRIORITIES


def _scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


# ── Handlers ──────────────────────────────────────────────────────────────────


async def webhook(request: Request):
    scheduler = _scheduler(request)
    event_id = request.path_params["event_id"]
    event = scheduler.state.get_event(event_id)
    if not event:
        return JSONResponse({"error": "Event not found"}, status_code=404)
    if event.type != "webhook":
        return JSONResponse({"error": f"Event is a {event.type} event"}, status_code=409)
    if not event.enabled:
        return JSONResponse({"error": "Event is disabled"}, status_code=409)

    trigger = scheduler.events.fire(event)
    return JSONResponse(_trigger_dict(trigger), status_code=202)


async def api_trigger_project(request: Request):
    scheduler = _scheduler(request)
    project_id = request.path_params["project_id"]
    if not scheduler.state.get_project(project_id):
        return JSONResponse({"error": "Project not found"}, status_code=404)

    body = {}
    if await request.body():
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"error": "Request body is not valid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)
    priority = body.get("priority", "medium")
    if priority not in PRIORITIES:
        return JSONResponse({"error": f"Invalid priority: {priority}"}, status_code=400)

    trigger = scheduler.submit_trigger(project_id, priority)
    return JSONResponse(_trigger_dict(trigger), status_code=202)


async def api_status(request: Request):
    return JSONResponse(_scheduler(request).status())


async def api_list_projects(request: Request):
    projects = _scheduler(request).state.get_all_projects()
    return JSONResponse([_project_dict(p) for p in projects])


async def api_get_project(request: Request):
    project = _scheduler(request).state.get_project(request.path_params["project_id"])
    if not project:
        return JSONResponse({"error": "Project not found"}, status_code=404)
    return JSONResponse(_project_dict(project))


async def api_list_sessions(request: Request):
    state = _scheduler(request).state
    project_id = request.query_params.get("project")
    status_filter = request.query_params.get("status")
    sessions = state.get_sessions_for_project(project_id) if project_id else state.get_all_sessions()
    if status_filter:
        sessions = [s for s in sessions if s.status == status_filter]
    return JSONResponse([_session_dict(s) for s in sessions])


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt):
    return dt.isoformat() if dt else None


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "goals": p.goals,
        "next_steps": p.next_steps,
        "hours_spent": p.hours_spent,
        "repository": p.repository,
        "last_worked_at": _iso(p.last_worked_at),
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


def _session_dict(s) -> dict:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "status": s.status,
        "started_at": _iso(s.started_at),
        "completed_at": _iso(s.completed_at),
        "duration": s.duration,
        "executor_session_key": s.executor_session_key,
        "summary": s.summary,
        "outcome": s.outcome,
        "error": s.error,
    }


def _trigger_dict(t) -> dict:
    return {
        "event_id": t.event_id,
        "project_id": t.project_id,
        "priority": t.priority,
        "triggered_at": _iso(t.triggered_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(scheduler: Scheduler) -> Starlette:
    routes = [
        Route("/hooks/{event_id}", webhook, methods=["POST"]),
        Route("/api/status", api_status),
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/trigger", api_trigger_project, methods=["POST"]),
        Route("/api/sessions", api_list_sessions),
    ]
    app = Starlette(routes=routes)
    app.state.scheduler = scheduler
    return app
