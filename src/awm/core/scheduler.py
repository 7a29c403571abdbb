"""Scheduler: admits queued triggers into work sessions and drives them to completion.

Every trigger goes through the same path::

    received -> queued -> admitted (session running) -> executing -> completed | failed

Admission happens in ``drain()``, which pops at most one trigger per call
and only while the number of active sessions is below the configured cap.
Each admitted session then runs as its own asyncio task, so sessions poll
the executor concurrently without blocking the drain loop.
"""

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime, timezone

from awm.config import Config
from awm.core.events import EventSource
from awm.core.queue import WorkQueue
from awm.core.state import StateStore, utcnow
from awm.db.models import MANUAL_EVENT_ID, Project, WorkEvent, WorkSession, WorkTrigger
from awm.integrations.executor import Executor
from awm.integrations.slack import SessionOutcome

logger = logging.getLogger(__name__)

OUTCOME_LIMIT = 500
TIMEOUT_ERROR = "Session timeout"


class Scheduler:
    def __init__(
        self,
        config: Config,
        state: StateStore,
        events: EventSource | None = None,
        executor: Executor | None = None,
        notifier=None,
    ):
        self.config = config
        self.state = state
        self.events = events or EventSource()
        self.executor = executor
        self.notifier = notifier
        self.queue = WorkQueue()
        self.running = False
        self._drain_task: asyncio.Task | None = None
        self._session_tasks: set[asyncio.Task] = set()

        self.events.subscribe(self.handle_trigger)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Register all known events and begin the periodic drain. No-op if running."""
        if self.running:
            logger.info("Scheduler already running")
            return

        self.running = True
        await self.events.start()
        for event in self.state.get_all_events():
            try:
                self.events.register(event)
            except ValueError as e:
                logger.error("Could not register event %s: %s", event.id, e)

        self._drain_task = asyncio.create_task(self._drain_loop(), name="awm-drain")
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop scheduling new work and persist state.

        Sessions already executing are left to finish on their own.
        """
        if not self.running:
            return

        self.running = False
        if self._drain_task:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

        await self.events.stop()
        self.state.save()
        logger.info("Scheduler stopped")

    async def wait(self) -> None:
        """Wait for every in-flight session to reach a terminal state."""
        while self._session_tasks:
            await asyncio.gather(*list(self._session_tasks), return_exceptions=True)

    async def _drain_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.config.drain_interval)
            try:
                self.drain()
            except Exception:
                logger.exception("Error in scheduler drain loop")

    # ── Triggers ─────────────────────────────────────────────────────────────

    def handle_trigger(self, trigger: WorkTrigger) -> None:
        """Record, queue and immediately try to admit a trigger."""
        logger.info("Handling trigger for project %s", trigger.project_id)
        if self.state.get_event(trigger.event_id):
            self.state.update_event(trigger.event_id, last_triggered=trigger.triggered_at)

        self.queue.enqueue(trigger)
        self.drain()

    def submit_trigger(
        self,
        project_id: str,
        priority: str = "medium",
        event_id: str = MANUAL_EVENT_ID,
        triggered_at: datetime | None = None,
    ) -> WorkTrigger:
        """Submit work for a project without going through a WorkEvent."""
        trigger = WorkTrigger(
            event_id=event_id,
            project_id=project_id,
            priority=priority,
            triggered_at=triggered_at or datetime.now(timezone.utc),
        )
        self.handle_trigger(trigger)
        return trigger

    def drain(self) -> WorkSession | None:
        """Admit at most one queued trigger if a session slot is free."""
        if self.queue.is_empty():
            return None

        active = self.state.get_active_session_count()
        if active >= self.config.max_concurrent_sessions:
            logger.info(
                "Max concurrent sessions reached (%d/%d), waiting",
                active, self.config.max_concurrent_sessions,
            )
            return None

        trigger = self.queue.dequeue()
        if trigger is None:
            return None
        return self.start_work_session(trigger)

    # ── Events ───────────────────────────────────────────────────────────────

    def create_event(
        self,
        type: str,
        project_id: str,
        trigger: str = "",
        priority: str = "medium",
        enabled: bool = True,
    ) -> WorkEvent:
        event = self.state.create_event(type, project_id, trigger, priority, enabled)
        try:
            self.events.register(event)
        except ValueError:
            self.state.delete_event(event.id)
            raise
        self.state.save()
        return event

    def update_event(self, event_id: str, **changes) -> WorkEvent | None:
        """Apply changes and re-register the watch. Invalid changes are rolled back."""
        previous = self.state.get_event(event_id)
        if not previous:
            return None
        event = self.state.update_event(event_id, **changes)
        try:
            self.events.register(event)
        except ValueError:
            self.state.update_event(event_id, **asdict(previous))
            raise
        self.state.save()
        return event

    def delete_event(self, event_id: str) -> bool:
        self.events.unregister(event_id)
        deleted = self.state.delete_event(event_id)
        if deleted:
            self.state.save()
        return deleted

    # ── Sessions ─────────────────────────────────────────────────────────────

    def start_work_session(self, trigger: WorkTrigger) -> WorkSession | None:
        """Admit a trigger: create a running session and start executing it.

        Triggers for missing or inactive projects are discarded.
        """
        project = self.state.get_project(trigger.project_id)
        if not project:
            logger.error("Project not found: %s, discarding trigger", trigger.project_id)
            return None

        if project.status != "active":
            logger.info("Project %s is %s, skipping trigger", project.name, project.status)
            return None

        logger.info("Starting work session for project: %s", project.name)
        session = self.state.create_session(
            project_id=project.id, status="running", started_at=utcnow()
        )
        self.state.mark_session_active(session.id)

        task = asyncio.create_task(self._run_session(project, session), name=f"session-{session.id}")
        self._session_tasks.add(task)
        task.add_done_callback(self._session_done)
        return session

    def _session_done(self, task: asyncio.Task) -> None:
        self._session_tasks.discard(task)
        if not task.cancelled() and task.exception():
            logger.error("Work session task failed", exc_info=task.exception())

    def _executor_available(self) -> bool:
        return self.executor is not None and self.executor.is_configured()

    async def _run_session(self, project: Project, session: WorkSession) -> None:
        task_text = build_work_context(project)

        if not self._executor_available():
            logger.warning("Executor not configured, running %s in simulation mode", project.name)
            await asyncio.sleep(self.config.simulation_delay)
            finished = self._finish(
                session.id,
                "completed",
                summary="Simulated work session (no executor configured)",
                outcome="Simulation mode - set AWM_EXECUTOR_BIN to run real sessions",
            )
            await self._notify(finished)
            return

        logger.info("Spawning executor session for project: %s", project.name)
        try:
            result = await self.executor.spawn(
                task=task_text,
                label=f"awm-{project.id}",
                cleanup="keep",
                timeout_seconds=int(self.config.session_duration),
            )
        except Exception as e:
            logger.exception("Failed to spawn executor session for %s", project.name)
            finished = self._finish(session.id, "failed", error=str(e) or type(e).__name__)
            await self._notify(finished)
            return

        logger.info("Executor session spawned: %s", result.session_key)
        self.state.update_session(session.id, executor_session_key=result.session_key)
        self.state.save()

        await self.wait_for_session_completion(session.id, result.session_key)

    async def wait_for_session_completion(self, session_id: str, session_key: str) -> WorkSession:
        """Poll executor history until it returns output or the session times out."""
        loop = asyncio.get_running_loop()
        max_wait = self.config.session_duration + self.config.timeout_buffer
        started = loop.time()

        while loop.time() - started < max_wait:
            await asyncio.sleep(self.config.poll_interval)
            try:
                history = await self.executor.get_history(session_key, 10)
            except Exception:
                logger.exception("Error polling executor session %s", session_key)
                continue

            if history:
                last = history[-1]
                content = last.get("content") if isinstance(last, dict) else None
                if isinstance(content, str) and content:
                    outcome = content[:OUTCOME_LIMIT]
                else:
                    outcome = "No output"
                finished = self._finish(
                    session_id,
                    "completed",
                    summary="Session completed - check history for details",
                    outcome=outcome,
                )
                logger.info("Session %s completed", session_key)
                await self._notify(finished, full_outcome=content if isinstance(content, str) else None)
                return finished

        logger.warning("Session %s timed out", session_key)
        finished = self._finish(session_id, "failed", error=TIMEOUT_ERROR)
        await self._notify(finished)
        return finished

    def _finish(
        self,
        session_id: str,
        status: str,
        summary: str | None = None,
        outcome: str | None = None,
        error: str | None = None,
    ) -> WorkSession:
        """Move a session to a terminal state, free its slot and persist."""
        session = self.state.get_session(session_id)
        completed_at = utcnow()
        started_at = session.started_at or completed_at
        duration = (completed_at - started_at).total_seconds()

        finished = self.state.update_session(
            session_id,
            status=status,
            completed_at=completed_at,
            duration=duration,
            summary=summary,
            outcome=outcome,
            error=error,
        )

        project = self.state.get_project(finished.project_id)
        if project:
            changes = {"last_worked_at": completed_at}
            if status == "completed":
                changes["hours_spent"] = project.hours_spent + duration / 3600
            self.state.update_project(project.id, **changes)

        self.state.mark_session_inactive(session_id)
        self.state.save()
        logger.info(
            "Work session %s for project %s %s after %.1fs",
            session_id, finished.project_id, status, duration,
        )
        return finished

    async def _notify(self, session: WorkSession, full_outcome: str | None = None) -> None:
        """Send the session outcome to the notifier. Failures are only logged."""
        if not self.notifier:
            return
        project = self.state.get_project(session.project_id)
        if not project:
            return
        outcome = SessionOutcome(
            project_id=project.id,
            project_name=project.name,
            session_id=session.id,
            status=session.status,
            duration=session.duration or 0.0,
            executor_session_key=session.executor_session_key,
            summary=session.summary,
            outcome=full_outcome or session.outcome,
            error=session.error,
            repository=project.repository,
        )
        try:
            await asyncio.to_thread(self.notifier.notify, outcome)
        except Exception:
            logger.exception("Failed to send notification for session %s", session.id)

    # ── Status ───────────────────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "running": self.running,
            "queue_size": self.queue.size(),
            "active_sessions": self.state.get_active_session_count(),
            "max_concurrent": self.config.max_concurrent_sessions,
            "events": self.events.status(),
        }


def build_work_context(project: Project) -> str:
    """Build the task description handed to the executor for one work session."""
    goals = "\n".join(f"- {g}" for g in project.goals)
    next_steps = "\n".join(f"- {s}" for s in project.next_steps)
    return (
        "# Autonomous Work Session\n"
        "\n"
        f"## Project: {project.name}\n"
        f"{project.description}\n"
        "\n"
        "## Goals\n"
        f"{goals}\n"
        "\n"
        "## Context\n"
        f"{project.context}\n"
        "\n"
        "## Next Steps\n"
        f"{next_steps}\n"
        "\n"
        "## Your Task\n"
        "Work autonomously on this project. Make progress on the next steps, update files, "
        "run tests, commit changes, and document your work.\n"
        "\n"
        "When done, provide a concise summary of:\n"
        "1. What you accomplished\n"
        "2. Any blockers or issues\n"
        "3. Recommended next steps\n"
        "\n"
        f"Work directory: ~/awm-workspace/{project.id}"
    )
