"""File-based intake queue for submitting work from outside the daemon process.

Writers append requests to ``work-queue.json``; the daemon takes the whole
list and clears the file on each poll.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from awm.db.models import PRIORITIES, QUEUE_EVENT_ID, WorkTrigger

logger = logging.getLogger(__name__)


def _read_requests(path: Path) -> list[dict]:
    try:
        return json.loads(Path(path).read_text() or "[]")
    except FileNotFoundError:
        return []


def queue_work(
    path: Path,
    project_id: str,
    priority: str = "medium",
    triggered_by: str = "manual",
) -> int:
    """Append a work request. Returns the number of pending requests."""
    if priority not in PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")

    requests = _read_requests(path)
    requests.append({
        "project_id": project_id,
        "priority": priority,
        "triggered_by": triggered_by,
        "triggered_at": datetime.now(timezone.utc).isoformat(),
    })
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    Path(path).write_text(json.dumps(requests, indent=2))
    return len(requests)


def pending_requests(path: Path) -> list[dict]:
    return _read_requests(path)


def take_queued_work(path: Path) -> list[WorkTrigger]:
    """Take every pending request as a trigger and clear the queue file."""
    requests = _read_requests(path)
    if not requests:
        return []
    Path(path).write_text("[]")

    triggers = []
    for req in requests:
        try:
            triggers.append(WorkTrigger(
                event_id=QUEUE_EVENT_ID,
                project_id=req["project_id"],
                priority=req.get("priority", "medium"),
                triggered_at=datetime.fromisoformat(req["triggered_at"])
                if req.get("triggered_at") else datetime.now(timezone.utc),
            ))
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed work request: %r", req)
            continue
        logger.info(
            "Queued work for %s (priority=%s, by %s)",
            req["project_id"], req.get("priority", "medium"), req.get("triggered_by", "unknown"),
        )
    return triggers
