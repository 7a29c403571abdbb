"""Canonical in-memory records for projects, sessions and events.

The store keeps every record set in memory and persists them as three
independent JSON collections. ``load()`` reads all three in full and
``save()`` writes all three in full; the writes are not atomic as a group.
"""

import dataclasses
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path

from awm.db.models import Project, WorkEvent, WorkSession
from awm.db.storage import read_collection, write_collection

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slugify(name: str) -> str:
    """Convert a project name to a URL-friendly slug."""
    slug = name.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


class StateStore:
    """Owns Project, WorkSession and WorkEvent records plus active-session bookkeeping."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._projects: dict[str, Project] = {}
        self._sessions: dict[str, WorkSession] = {}
        self._events: dict[str, WorkEvent] = {}
        self._active_session_ids: set[str] = set()

    # ── Persistence ──────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Create the data directory if needed and load all collections."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.load()

    def load(self) -> None:
        self._projects = {
            p.id: p for p in (_record_to_project(r) for r in read_collection(self.data_dir, "projects"))
        }
        self._sessions = {
            s.id: s for s in (_record_to_session(r) for r in read_collection(self.data_dir, "sessions"))
        }
        self._events = {
            e.id: e for e in (_record_to_event(r) for r in read_collection(self.data_dir, "events"))
        }
        logger.debug(
            "Loaded %d projects, %d sessions, %d events from %s",
            len(self._projects), len(self._sessions), len(self._events), self.data_dir,
        )

    def save(self) -> None:
        write_collection(self.data_dir, "projects", [_to_record(p) for p in self._projects.values()])
        write_collection(self.data_dir, "sessions", [_to_record(s) for s in self._sessions.values()])
        write_collection(self.data_dir, "events", [_to_record(e) for e in self._events.values()])

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(
        self,
        name: str,
        description: str = "",
        status: str = "active",
        goals: list[str] | None = None,
        context: str = "",
        next_steps: list[str] | None = None,
        repository: str | None = None,
        estimated_hours: float | None = None,
    ) -> Project:
        now = utcnow()
        project = Project(
            id=self._unique_project_id(slugify(name) or "project"),
            name=name,
            description=description,
            status=status,
            goals=list(goals or []),
            context=context,
            next_steps=list(next_steps or []),
            created_at=now,
            updated_at=now,
            estimated_hours=estimated_hours,
            hours_spent=0.0,
            repository=repository,
        )
        self._projects[project.id] = project
        return project

    def get_project(self, project_id: str) -> Project | None:
        return self._projects.get(project_id)

    def get_all_projects(self) -> list[Project]:
        return list(self._projects.values())

    def update_project(self, project_id: str, **changes) -> Project | None:
        """Shallow-merge changes into a project and refresh ``updated_at``.

        Returns None when the project does not exist.
        """
        project = self._projects.get(project_id)
        if not project:
            return None
        updated = _merge(project, changes)
        updated.updated_at = utcnow()
        self._projects[project_id] = updated
        return updated

    def delete_project(self, project_id: str) -> bool:
        return self._projects.pop(project_id, None) is not None

    def _unique_project_id(self, base_slug: str) -> str:
        if base_slug not in self._projects:
            return base_slug
        i = 2
        while f"{base_slug}-{i}" in self._projects:
            i += 1
        return f"{base_slug}-{i}"

    # ── Sessions ─────────────────────────────────────────────────────────────

    def create_session(
        self,
        project_id: str,
        status: str = "pending",
        started_at: datetime | None = None,
    ) -> WorkSession:
        session = WorkSession(
            id=uuid.uuid4().hex,
            project_id=project_id,
            status=status,
            started_at=started_at,
        )
        self._sessions[session.id] = session
        return session

    def get_session(self, session_id: str) -> WorkSession | None:
        return self._sessions.get(session_id)

    def get_all_sessions(self) -> list[WorkSession]:
        return list(self._sessions.values())

    def get_sessions_for_project(self, project_id: str) -> list[WorkSession]:
        return [s for s in self._sessions.values() if s.project_id == project_id]

    def update_session(self, session_id: str, **changes) -> WorkSession | None:
        session = self._sessions.get(session_id)
        if not session:
            return None
        updated = _merge(session, changes)
        self._sessions[session_id] = updated
        return updated

    def delete_session(self, session_id: str) -> bool:
        self._active_session_ids.discard(session_id)
        return self._sessions.pop(session_id, None) is not None

    # ── Events ───────────────────────────────────────────────────────────────

    def create_event(
        self,
        type: str,
        project_id: str,
        trigger: str = "",
        priority: str = "medium",
        enabled: bool = True,
    ) -> WorkEvent:
        event = WorkEvent(
            id=uuid.uuid4().hex,
            type=type,
            project_id=project_id,
            priority=priority,
            trigger=trigger,
            enabled=enabled,
        )
        self._events[event.id] = event
        return event

    def get_event(self, event_id: str) -> WorkEvent | None:
        return self._events.get(event_id)

    def get_all_events(self) -> list[WorkEvent]:
        return list(self._events.values())

    def get_events_for_project(self, project_id: str) -> list[WorkEvent]:
        return [e for e in self._events.values() if e.project_id == project_id]

    def update_event(self, event_id: str, **changes) -> WorkEvent | None:
        event = self._events.get(event_id)
        if not event:
            return None
        updated = _merge(event, changes)
        self._events[event_id] = updated
        return updated

    def delete_event(self, event_id: str) -> bool:
        return self._events.pop(event_id, None) is not None

    # ── Active sessions ──────────────────────────────────────────────────────

    def mark_session_active(self, session_id: str) -> None:
        self._active_session_ids.add(session_id)

    def mark_session_inactive(self, session_id: str) -> None:
        self._active_session_ids.discard(session_id)

    def get_active_sessions(self) -> list[WorkSession]:
        return [
            self._sessions[sid] for sid in self._active_session_ids if sid in self._sessions
        ]

    def get_active_session_count(self) -> int:
        return len(self._active_session_ids)


# ── Record helpers ───────────────────────────────────────────────────────────


def _merge(record, changes: dict):
    """Return a copy of a dataclass record with known fields replaced."""
    names = {f.name for f in dataclasses.fields(record)} - {"id"}
    ignored = set(changes) - names
    if ignored:
        logger.debug("Ignoring unknown fields for %s: %s", type(record).__name__, sorted(ignored))
    return dataclasses.replace(record, **{k: v for k, v in changes.items() if k in names})


def _to_record(obj) -> dict:
    record = dataclasses.asdict(obj)
    for key, value in record.items():
        if isinstance(value, datetime):
            record[key] = value.isoformat()
    return record


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _record_to_project(record: dict) -> Project:
    return Project(
        id=record["id"],
        name=record["name"],
        description=record.get("description", ""),
        status=record.get("status", "active"),
        goals=list(record.get("goals", [])),
        context=record.get("context", ""),
        next_steps=list(record.get("next_steps", [])),
        created_at=_parse_dt(record.get("created_at")),
        updated_at=_parse_dt(record.get("updated_at")),
        last_worked_at=_parse_dt(record.get("last_worked_at")),
        estimated_hours=record.get("estimated_hours"),
        hours_spent=float(record.get("hours_spent", 0.0)),
        repository=record.get("repository"),
    )


def _record_to_session(record: dict) -> WorkSession:
    return WorkSession(
        id=record["id"],
        project_id=record["project_id"],
        status=record.get("status", "pending"),
        started_at=_parse_dt(record.get("started_at")),
        completed_at=_parse_dt(record.get("completed_at")),
        duration=record.get("duration"),
        executor_session_key=record.get("executor_session_key"),
        summary=record.get("summary"),
        outcome=record.get("outcome"),
        error=record.get("error"),
    )


def _record_to_event(record: dict) -> WorkEvent:
    return WorkEvent(
        id=record["id"],
        type=record["type"],
        project_id=record["project_id"],
        priority=record.get("priority", "medium"),
        trigger=record.get("trigger", ""),
        enabled=bool(record.get("enabled", True)),
        last_triggered=_parse_dt(record.get("last_triggered")),
    )
