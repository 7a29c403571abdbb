"""Trigger source: turns WorkEvents into WorkTriggers.

Time events are driven by a cron expression (evaluated in UTC with
croniter) and file events by a watchfiles watch on a path. Webhook and
manual events have no watch and only fire through ``fire()``.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from croniter import croniter

from awm.db.models import WorkEvent, WorkTrigger

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[WorkTrigger], None]


@dataclass(frozen=True)
class CronSchedule:
    expression: str


@dataclass(frozen=True)
class PathWatch:
    path: str


TriggerSpec = CronSchedule | PathWatch


def watch_for_event(event: WorkEvent) -> TriggerSpec | None:
    """Return the watch an event needs, or None for on-demand event types."""
    if event.type == "time":
        if not croniter.is_valid(event.trigger):
            raise ValueError(f"Invalid schedule expression for event {event.id}: {event.trigger!r}")
        return CronSchedule(event.trigger)
    if event.type == "file":
        if not event.trigger:
            raise ValueError(f"File event {event.id} has no path")
        return PathWatch(event.trigger)
    return None


class EventSource:
    """Registry of WorkEvents with one background watch task per schedule or path."""

    def __init__(self):
        self.enabled = False
        self._events: dict[str, WorkEvent] = {}
        self._watches: dict[str, TriggerSpec] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._subscribers: list[TriggerCallback] = []

    def subscribe(self, callback: TriggerCallback) -> None:
        self._subscribers.append(callback)

    async def start(self) -> None:
        if self.enabled:
            return
        self.enabled = True
        for event_id in self._watches:
            self._spawn(event_id)
        logger.info("Event source started")

    async def stop(self) -> None:
        if not self.enabled:
            return
        self.enabled = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Event source stopped")

    def register(self, event: WorkEvent) -> None:
        """Register or re-register an event, replacing any existing watch."""
        watch = watch_for_event(event)
        self.unregister(event.id)
        self._events[event.id] = event
        if watch is None:
            return
        self._watches[event.id] = watch
        if self.enabled:
            self._spawn(event.id)
        logger.info("Registered %s event %s (%s)", event.type, event.id, event.trigger)

    def unregister(self, event_id: str) -> None:
        self._events.pop(event_id, None)
        self._watches.pop(event_id, None)
        task = self._tasks.pop(event_id, None)
        if task:
            task.cancel()

    def fire(self, event: WorkEvent) -> WorkTrigger | None:
        """Emit a trigger for an event. Disabled events produce nothing."""
        if not event.enabled:
            logger.info("Event %s is disabled, skipping trigger", event.id)
            return None
        trigger = WorkTrigger(
            event_id=event.id,
            project_id=event.project_id,
            priority=event.priority,
            triggered_at=datetime.now(timezone.utc),
        )
        logger.info("Event triggered: %s for project %s", event.id, event.project_id)
        for callback in self._subscribers:
            try:
                callback(trigger)
            except Exception:
                logger.exception("Trigger subscriber failed for event %s", event.id)
        return trigger

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "schedules": sum(isinstance(w, CronSchedule) for w in self._watches.values()),
            "paths": sum(isinstance(w, PathWatch) for w in self._watches.values()),
        }

    # ── Watch tasks ──────────────────────────────────────────────────────────

    def _spawn(self, event_id: str) -> None:
        watch = self._watches[event_id]
        if isinstance(watch, CronSchedule):
            coro = self._run_schedule(event_id, watch)
        else:
            coro = self._run_path(event_id, watch)
        self._tasks[event_id] = asyncio.create_task(coro, name=f"watch-{event_id}")

    async def _run_schedule(self, event_id: str, watch: CronSchedule) -> None:
        cron = croniter(watch.expression, datetime.now(timezone.utc))
        while True:
            next_fire = cron.get_next(datetime)
            delay = (next_fire - datetime.now(timezone.utc)).total_seconds()
            await asyncio.sleep(max(0.0, delay))
            self._fire_registered(event_id)

    async def _run_path(self, event_id: str, watch: PathWatch) -> None:
        from watchfiles import awatch

        try:
            async for changes in awatch(watch.path):
                for change, path in changes:
                    logger.info("File event detected: %s on %s", change.name, path)
                self._fire_registered(event_id)
        except FileNotFoundError:
            logger.error("Watched path does not exist for event %s: %s", event_id, watch.path)

    def _fire_registered(self, event_id: str) -> None:
        event = self._events.get(event_id)
        if event and self.enabled:
            self.fire(event)
