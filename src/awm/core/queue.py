"""Priority-ordered queue of pending work triggers."""

import itertools
import logging
from dataclasses import dataclass

from awm.db.models import PRIORITY_RANK, WorkTrigger

logger = logging.getLogger(__name__)


@dataclass
class QueuedWork:
    trigger: WorkTrigger
    seq: int


class WorkQueue:
    """Triggers ordered by priority rank, then by arrival order in the queue.

    The trigger's own ``triggered_at`` plays no part in ordering. Depth is
    bounded by the number of projects, so a sorted list is enough.
    """

    def __init__(self):
        self._items: list[QueuedWork] = []
        self._counter = itertools.count()

    def enqueue(self, trigger: WorkTrigger) -> None:
        self._items.append(QueuedWork(trigger=trigger, seq=next(self._counter)))
        self._sort()
        logger.info(
            "Work queued: project=%s priority=%s queue size=%d",
            trigger.project_id, trigger.priority, len(self._items),
        )

    def dequeue(self) -> WorkTrigger | None:
        if not self._items:
            return None
        return self._items.pop(0).trigger

    def peek(self) -> WorkTrigger | None:
        if not self._items:
            return None
        return self._items[0].trigger

    def size(self) -> int:
        return len(self._items)

    def is_empty(self) -> bool:
        return not self._items

    def clear(self) -> None:
        self._items = []

    def get_all(self) -> list[WorkTrigger]:
        """All queued triggers in dequeue order (for inspection)."""
        return [w.trigger for w in self._items]

    def remove_by_project(self, project_id: str) -> int:
        """Drop every queued trigger for a project. Returns how many were removed."""
        before = len(self._items)
        self._items = [w for w in self._items if w.trigger.project_id != project_id]
        return before - len(self._items)

    def _sort(self) -> None:
        # Unknown priorities sort after "low"
        self._items.sort(
            key=lambda w: (PRIORITY_RANK.get(w.trigger.priority, len(PRIORITY_RANK)), w.seq)
        )
