"""CLI entry point for the autonomous work manager."""

import asyncio
import json
import os
import signal
import sys

import click

from awm.config import get_config
from awm.core import daemon as daemon_mod
from awm.core import intake as intake_mod
from awm.core.events import watch_for_event
from awm.core.state import StateStore
from awm.db.models import PRIORITIES, SESSION_STATUSES


def _get_state() -> StateStore:
    config = get_config()
    state = StateStore(config.data_dir)
    state.initialize()
    return state


def _require_project(state: StateStore, project_id: str):
    project = state.get_project(project_id)
    if not project:
        click.echo(f"Project not found: {project_id}", err=True)
        sys.exit(1)
    return project


@click.group()
def main():
    """awm - Autonomous Work Manager CLI"""
    pass


# ── Daemon Commands ───────────────────────────────────────────────────────────


@main.command("start")
def start_daemon():
    """Run the scheduler daemon in the foreground."""
    config = get_config()
    if pid := daemon_mod.read_pid(config):
        click.echo(f"Daemon already running (PID {pid})", err=True)
        sys.exit(1)

    daemon_mod.configure_logging(config.log_level)
    click.echo(f"Starting AWM daemon (data: {config.data_dir}). Press Ctrl+C to stop.")
    asyncio.run(daemon_mod.run_daemon(config))


@main.command("stop")
def stop_daemon():
    """Stop a running daemon."""
    config = get_config()
    pid = daemon_mod.read_pid(config)
    if not pid:
        click.echo("Daemon is not running.", err=True)
        sys.exit(1)
    os.kill(pid, signal.SIGTERM)
    click.echo(f"Sent stop signal to daemon (PID {pid})")


@main.command("status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status(json_output):
    """Show daemon, queue and session status."""
    config = get_config()
    state = _get_state()
    pid = daemon_mod.read_pid(config)
    running = [s for s in state.get_all_sessions() if s.status == "running"]
    info = {
        "daemon_running": pid is not None,
        "pid": pid,
        "data_dir": str(config.data_dir),
        "max_concurrent": config.max_concurrent_sessions,
        "projects": len(state.get_all_projects()),
        "events": len(state.get_all_events()),
        "running_sessions": len(running),
        "pending_requests": len(intake_mod.pending_requests(config.intake_file)),
    }
    if json_output:
        click.echo(json.dumps(info, indent=2))
        return

    click.echo(f"Daemon: {'running (PID ' + str(pid) + ')' if pid else 'stopped'}")
    click.echo(f"  Data dir: {info['data_dir']}")
    click.echo(f"  Projects: {info['projects']} | Events: {info['events']}")
    click.echo(f"  Running sessions: {info['running_sessions']}/{info['max_concurrent']}")
    click.echo(f"  Pending requests: {info['pending_requests']}")


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("create")
@click.argument("name")
@click.option("--description", "-d", default="", help="Project description")
@click.option("--goal", "goals", multiple=True, help="Project goal (repeatable)")
@click.option("--next-step", "next_steps", multiple=True, help="Next step (repeatable)")
@click.option("--context", default="", help="Context handed to each work session")
@click.option("--repository", default=None, help="Repository URL")
@click.option("--estimated-hours", type=float, default=None, help="Estimated effort in hours")
def project_create(name, description, goals, next_steps, context, repository, estimated_hours):
    """Create a new project."""
    state = _get_state()
    project = state.create_project(
        name,
        description=description,
        goals=list(goals),
        context=context,
        next_steps=list(next_steps),
        repository=repository,
        estimated_hours=estimated_hours,
    )
    state.save()
    click.echo(f"Project created: {project.id} ({project.name})")
    click.echo(f"  Status: {project.status}")


@project_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(json_output):
    """List projects."""
    projects = _get_state().get_all_projects()
    if json_output:
        click.echo(json.dumps([_project_dict(p) for p in projects], indent=2))
        return
    if not projects:
        click.echo("No projects found.")
        return
    for p in projects:
        click.echo(f"  {p.id} - {p.name} [{p.status}]")
        if p.description:
            click.echo(f"    {p.description}")
        click.echo(f"    Hours: {p.hours_spent:.2f}")


@project_group.command("show")
@click.argument("project_id")
def project_show(project_id):
    """Show project details and recent sessions."""
    state = _get_state()
    project = _require_project(state, project_id)

    click.echo(f"Project: {project.id}")
    click.echo(f"  Name: {project.name}")
    click.echo(f"  Status: {project.status}")
    if project.description:
        click.echo(f"  Description: {project.description}")
    if project.repository:
        click.echo(f"  Repository: {project.repository}")
    click.echo(f"  Hours spent: {project.hours_spent:.2f}")
    if project.last_worked_at:
        click.echo(f"  Last worked: {project.last_worked_at}")
    if project.goals:
        click.echo("  Goals:")
        for g in project.goals:
            click.echo(f"    - {g}")
    if project.next_steps:
        click.echo("  Next steps:")
        for s in project.next_steps:
            click.echo(f"    - {s}")

    sessions = state.get_sessions_for_project(project_id)
    if sessions:
        click.echo("  Sessions:")
        for s in sessions[-5:]:
            click.echo(f"    [{s.status}] {s.id} started {s.started_at}")


def _set_project_status(project_id: str, status: str):
    state = _get_state()
    project = state.update_project(project_id, status=status)
    if not project:
        click.echo(f"Project not found: {project_id}", err=True)
        sys.exit(1)
    state.save()
    click.echo(f"Project {project.id} is now {project.status}")


@project_group.command("pause")
@click.argument("project_id")
def project_pause(project_id):
    """Pause a project so its triggers are skipped."""
    _set_project_status(project_id, "paused")


@project_group.command("resume")
@click.argument("project_id")
def project_resume(project_id):
    """Make a project active again."""
    _set_project_status(project_id, "active")


@project_group.command("archive")
@click.argument("project_id")
def project_archive(project_id):
    """Archive a project."""
    _set_project_status(project_id, "archived")


# ── Event Commands ────────────────────────────────────────────────────────────


@main.group("event")
def event_group():
    """Manage work events (triggers bound to projects)."""
    pass


def _add_event(event_type: str, project_id: str, trigger: str, priority: str):
    state = _get_state()
    _require_project(state, project_id)
    event = state.create_event(event_type, project_id, trigger, priority)
    try:
        watch_for_event(event)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    state.save()
    click.echo(f"Event created: {event.id}")
    click.echo(f"  Type: {event.type} | Project: {event.project_id} | Priority: {event.priority}")
    if event.trigger:
        click.echo(f"  Trigger: {event.trigger}")
    return event


@event_group.command("add-time")
@click.argument("project_id")
@click.argument("schedule")
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="medium")
def event_add_time(project_id, schedule, priority):
    """Add a cron-scheduled event, e.g. "0 2 * * *" for 02:00 UTC daily."""
    _add_event("time", project_id, schedule, priority)


@event_group.command("add-file")
@click.argument("project_id")
@click.argument("path", type=click.Path())
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="medium")
def event_add_file(project_id, path, priority):
    """Add an event fired when files under PATH change."""
    _add_event("file", project_id, os.path.abspath(path), priority)


@event_group.command("add-webhook")
@click.argument("project_id")
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="medium")
def event_add_webhook(project_id, priority):
    """Add an event fired by POST /hooks/<event id>."""
    event = _add_event("webhook", project_id, "", priority)
    click.echo(f"  Hook: POST /hooks/{event.id}")


@event_group.command("list")
@click.option("--project", default=None, help="Filter by project ID")
def event_list(project):
    """List events."""
    state = _get_state()
    events = state.get_events_for_project(project) if project else state.get_all_events()
    if not events:
        click.echo("No events found.")
        return
    for e in events:
        flag = "on" if e.enabled else "off"
        last = f" last={e.last_triggered}" if e.last_triggered else ""
        click.echo(f"  [{flag}] {e.id} {e.type} {e.trigger!r} project={e.project_id} priority={e.priority}{last}")


def _set_event_enabled(event_id: str, enabled: bool):
    state = _get_state()
    event = state.update_event(event_id, enabled=enabled)
    if not event:
        click.echo(f"Event not found: {event_id}", err=True)
        sys.exit(1)
    state.save()
    click.echo(f"Event {event.id} {'enabled' if enabled else 'disabled'}")


@event_group.command("enable")
@click.argument("event_id")
def event_enable(event_id):
    """Enable an event."""
    _set_event_enabled(event_id, True)


@event_group.command("disable")
@click.argument("event_id")
def event_disable(event_id):
    """Disable an event."""
    _set_event_enabled(event_id, False)


@event_group.command("remove")
@click.argument("event_id")
def event_remove(event_id):
    """Delete an event."""
    state = _get_state()
    if not state.delete_event(event_id):
        click.echo(f"Event not found: {event_id}", err=True)
        sys.exit(1)
    state.save()
    click.echo(f"Event removed: {event_id}")


# ── Work Commands ─────────────────────────────────────────────────────────────


@main.command("trigger")
@click.argument("project_id")
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="medium")
def trigger(project_id, priority):
    """Queue a work session for a project. The daemon picks it up on its next cycle."""
    config = get_config()
    state = _get_state()
    project = _require_project(state, project_id)

    pending = intake_mod.queue_work(config.intake_file, project.id, priority, "manual")
    click.echo(f"Work queued: {project.id} (priority: {priority})")
    click.echo(f"  Pending requests: {pending}")
    if not daemon_mod.read_pid(config):
        click.echo("  Daemon is not running; start it with 'awm start'.", err=True)


@main.command("sessions")
@click.option("--project", default=None, help="Filter by project ID")
@click.option("--status", type=click.Choice(SESSION_STATUSES), default=None)
def sessions(project, status):
    """List work sessions."""
    state = _get_state()
    items = state.get_sessions_for_project(project) if project else state.get_all_sessions()
    if status:
        items = [s for s in items if s.status == status]
    if not items:
        click.echo("No sessions found.")
        return
    for s in items:
        duration = f" {s.duration / 60:.1f}m" if s.duration is not None else ""
        click.echo(f"  [{s.status.upper()}] {s.id} project={s.project_id}{duration}")
        if s.error:
            click.echo(f"    Error: {s.error}")
        elif s.outcome:
            click.echo(f"    Outcome: {s.outcome[:200]}")


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from awm.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _project_dict(project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "status": project.status,
        "goals": project.goals,
        "next_steps": project.next_steps,
        "hours_spent": project.hours_spent,
        "repository": project.repository,
    }


if __name__ == "__main__":
    main()
