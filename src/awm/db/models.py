"""Data models for the autonomous work manager."""

from dataclasses import dataclass, field
from datetime import datetime

PROJECT_STATUSES = ("active", "paused", "completed", "archived")
SESSION_STATUSES = ("pending", "running", "completed", "failed")
EVENT_TYPES = ("time", "file", "webhook", "manual")
PRIORITIES = ("critical", "high", "medium", "low")

# Lower rank is dequeued first
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}

TERMINAL_STATUSES = ("completed", "failed")

MANUAL_EVENT_ID = "manual"
QUEUE_EVENT_ID = "queue"


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    status: str = "active"
    goals: list[str] = field(default_factory=list)
    context: str = ""
    next_steps: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_worked_at: datetime | None = None
    estimated_hours: float | None = None
    hours_spent: float = 0.0
    repository: str | None = None


@dataclass
class WorkEvent:
    id: str
    type: str
    project_id: str
    priority: str = "medium"
    trigger: str = ""
    enabled: bool = True
    last_triggered: datetime | None = None


@dataclass
class WorkSession:
    id: str
    project_id: str
    status: str = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration: float | None = None
    executor_session_key: str | None = None
    summary: str | None = None
    outcome: str | None = None
    error: str | None = None


@dataclass
class WorkTrigger:
    event_id: str
    project_id: str
    priority: str
    triggered_at: datetime
