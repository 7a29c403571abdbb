"""Tests for trigger admission and the work session lifecycle."""

import asyncio
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from awm.config import Config
from awm.core.scheduler import Scheduler, build_work_context
from awm.core.state import StateStore
from awm.db.models import WorkTrigger
from awm.integrations.executor import ExecutorError, SpawnResult


class FakeExecutor:
    """Executor whose sessions finish only when a test says so."""

    def __init__(self, spawn_error: Exception | None = None, failing_polls: int = 0):
        self.spawn_error = spawn_error
        self.failing_polls = failing_polls
        self.spawned: list[dict] = []
        self.finished: dict[str, str] = {}
        self.history_calls = 0

    def is_configured(self) -> bool:
        return True

    async def spawn(self, task, label, cleanup="keep", timeout_seconds=None):
        if self.spawn_error:
            raise self.spawn_error
        key = f"key-{len(self.spawned) + 1}"
        self.spawned.append(
            {"task": task, "label": label, "cleanup": cleanup, "timeout": timeout_seconds, "key": key}
        )
        return SpawnResult(session_key=key, status="spawned")

    async def get_history(self, session_key, limit=10):
        self.history_calls += 1
        if self.failing_polls:
            self.failing_polls -= 1
            raise ExecutorError("gateway unavailable")
        if session_key in self.finished:
            return [{"content": "working"}, {"content": self.finished[session_key]}]
        return []


@pytest.fixture
def data_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


def _config(data_dir: Path, **overrides) -> Config:
    values = dict(
        data_dir=data_dir,
        max_concurrent_sessions=2,
        session_duration=5.0,
        drain_interval=0.05,
        poll_interval=0.01,
        timeout_buffer=0.05,
        simulation_delay=0.05,
    )
    values.update(overrides)
    return Config(**values)


def _scheduler(data_dir: Path, executor=None, notifier=None, **overrides):
    state = StateStore(data_dir)
    state.initialize()
    return Scheduler(_config(data_dir, **overrides), state, executor=executor, notifier=notifier)


async def _wait_for(predicate, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


def _manual(project_id: str, priority: str) -> WorkTrigger:
    return WorkTrigger("manual", project_id, priority, datetime.now(timezone.utc))


class TestAdmission:
    def test_missing_project_is_discarded(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            scheduler.submit_trigger("ghost", "critical")
            assert scheduler.state.get_all_sessions() == []
            assert scheduler.queue.is_empty()
            assert scheduler.state.get_active_session_count() == 0

        asyncio.run(scenario())

    def test_inactive_project_is_discarded(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Paused", status="paused")
            scheduler.submit_trigger(project.id)
            assert scheduler.state.get_all_sessions() == []
            assert scheduler.state.get_project(project.id).hours_spent == 0.0

        asyncio.run(scenario())

    def test_capacity_one_admits_by_priority(self, data_dir):
        async def scenario():
            executor = FakeExecutor()
            scheduler = _scheduler(data_dir, executor=executor, max_concurrent_sessions=1)
            a = scheduler.state.create_project("A")
            b = scheduler.state.create_project("B")

            # Same cycle: both queued before any drain
            scheduler.queue.enqueue(_manual(a.id, "high"))
            scheduler.queue.enqueue(_manual(b.id, "critical"))

            first = scheduler.drain()
            assert first.project_id == b.id
            assert first.status == "running"
            assert scheduler.queue.peek().project_id == a.id

            # Back-pressure: head stays queued
            assert scheduler.drain() is None
            assert scheduler.queue.size() == 1

            await _wait_for(lambda: executor.spawned)
            executor.finished["key-1"] = "B done"
            await _wait_for(lambda: scheduler.state.get_session(first.id).status == "completed")
            assert scheduler.state.get_active_session_count() == 0

            second = scheduler.drain()
            assert second.project_id == a.id
            assert scheduler.queue.is_empty()

            await _wait_for(lambda: len(executor.spawned) == 2)
            executor.finished["key-2"] = "A done"
            await scheduler.wait()

        asyncio.run(scenario())

    def test_active_sessions_never_exceed_cap(self, data_dir):
        async def scenario():
            executor = FakeExecutor()
            scheduler = _scheduler(data_dir, executor=executor, max_concurrent_sessions=2)
            projects = [scheduler.state.create_project(f"P{i}") for i in range(5)]

            for p in projects:
                scheduler.submit_trigger(p.id)
                assert scheduler.state.get_active_session_count() <= 2

            assert scheduler.state.get_active_session_count() == 2
            assert scheduler.queue.size() == 3
            running = [s for s in scheduler.state.get_all_sessions() if s.status == "running"]
            assert len(running) == 2

            # Only one admission per drain, even after both slots free up
            await _wait_for(lambda: len(executor.spawned) == 2)
            executor.finished["key-1"] = "done"
            executor.finished["key-2"] = "done"
            await _wait_for(lambda: scheduler.state.get_active_session_count() == 0)
            scheduler.drain()
            assert scheduler.state.get_active_session_count() == 1
            assert scheduler.queue.size() == 2

            scheduler.queue.clear()
            await _wait_for(lambda: len(executor.spawned) == 3)
            executor.finished["key-3"] = "done"
            await scheduler.wait()

        asyncio.run(scenario())

    def test_handle_trigger_records_event_time(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir, max_concurrent_sessions=0)
            project = scheduler.state.create_project("Evented")
            event = scheduler.state.create_event("webhook", project.id, priority="high")

            trigger = scheduler.events.fire(event)
            assert trigger is not None
            assert scheduler.state.get_event(event.id).last_triggered == trigger.triggered_at
            assert scheduler.queue.peek().priority == "high"

        asyncio.run(scenario())

    def test_disabled_event_does_not_fire(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir, max_concurrent_sessions=0)
            project = scheduler.state.create_project("Evented")
            event = scheduler.state.create_event("webhook", project.id, enabled=False)
            assert scheduler.events.fire(event) is None
            assert scheduler.queue.is_empty()

        asyncio.run(scenario())


class TestSessionLifecycle:
    def test_simulation_fallback(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Sim")

            scheduler.submit_trigger(project.id)
            await scheduler.wait()

            [session] = scheduler.state.get_sessions_for_project(project.id)
            assert session.status == "completed"
            assert "Simulated" in session.summary
            assert session.duration > 0
            updated = scheduler.state.get_project(project.id)
            assert updated.hours_spent > 0
            assert updated.last_worked_at is not None
            assert scheduler.state.get_active_session_count() == 0

        asyncio.run(scenario())

    def test_completion_credits_hours_and_truncates_outcome(self, data_dir):
        async def scenario():
            executor = FakeExecutor()
            notifier = MagicMock()
            scheduler = _scheduler(data_dir, executor=executor, notifier=notifier)
            project = scheduler.state.create_project("Real", goals=["Ship v1"])

            scheduler.submit_trigger(project.id)
            [session] = scheduler.state.get_all_sessions()
            await _wait_for(lambda: executor.spawned)
            spawned = executor.spawned[0]
            assert spawned["label"] == f"awm-{project.id}"
            assert spawned["cleanup"] == "keep"
            assert spawned["timeout"] == 5
            assert "Ship v1" in spawned["task"]

            executor.finished["key-1"] = "x" * 2000
            await scheduler.wait()

            done = scheduler.state.get_session(session.id)
            assert done.status == "completed"
            assert done.executor_session_key == "key-1"
            assert done.outcome == "x" * 500
            assert done.duration == pytest.approx(
                (done.completed_at - done.started_at).total_seconds()
            )
            assert scheduler.state.get_project(project.id).hours_spent == pytest.approx(
                done.duration / 3600
            )

            notifier.notify.assert_called_once()
            outcome = notifier.notify.call_args[0][0]
            assert outcome.status == "completed"
            assert outcome.project_name == "Real"

        asyncio.run(scenario())

    def test_timeout_fails_session(self, data_dir):
        async def scenario():
            executor = FakeExecutor()
            notifier = MagicMock()
            scheduler = _scheduler(
                data_dir,
                executor=executor,
                notifier=notifier,
                session_duration=0.1,
                timeout_buffer=0.06,
                poll_interval=0.02,
            )
            project = scheduler.state.create_project("Slow")

            scheduler.submit_trigger(project.id)
            [session] = scheduler.state.get_all_sessions()
            await asyncio.sleep(0.05)
            assert scheduler.state.get_session(session.id).status == "running"

            await scheduler.wait()
            failed = scheduler.state.get_session(session.id)
            assert failed.status == "failed"
            assert failed.error == "Session timeout"
            assert failed.duration >= 0.15
            assert scheduler.state.get_active_session_count() == 0
            assert scheduler.state.get_project(project.id).hours_spent == 0.0
            assert executor.history_calls > 1
            assert notifier.notify.call_args[0][0].error == "Session timeout"

        asyncio.run(scenario())

    def test_spawn_failure_fails_session(self, data_dir):
        async def scenario():
            executor = FakeExecutor(spawn_error=ExecutorError("agent binary missing"))
            scheduler = _scheduler(data_dir, executor=executor)
            project = scheduler.state.create_project("Broken")

            scheduler.submit_trigger(project.id)
            await scheduler.wait()

            [session] = scheduler.state.get_all_sessions()
            assert session.status == "failed"
            assert session.error == "agent binary missing"
            assert session.duration is not None
            assert scheduler.state.get_project(project.id).hours_spent == 0.0
            assert scheduler.state.get_active_session_count() == 0

        asyncio.run(scenario())

    def test_poll_errors_are_retried(self, data_dir):
        async def scenario():
            executor = FakeExecutor(failing_polls=3)
            scheduler = _scheduler(data_dir, executor=executor)
            project = scheduler.state.create_project("Flaky")
            scheduler.submit_trigger(project.id)

            await _wait_for(lambda: executor.spawned)
            executor.finished["key-1"] = "finally"
            await scheduler.wait()

            [session] = scheduler.state.get_all_sessions()
            assert session.status == "completed"
            assert session.outcome == "finally"
            assert executor.history_calls >= 4

        asyncio.run(scenario())

    def test_notifier_failure_does_not_change_session(self, data_dir):
        async def scenario():
            notifier = MagicMock()
            notifier.notify.side_effect = RuntimeError("slack down")
            scheduler = _scheduler(data_dir, notifier=notifier)
            project = scheduler.state.create_project("Notified")

            scheduler.submit_trigger(project.id)
            await scheduler.wait()

            [session] = scheduler.state.get_all_sessions()
            assert session.status == "completed"
            notifier.notify.assert_called_once()

        asyncio.run(scenario())

    def test_terminal_state_is_persisted(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Saved")
            scheduler.submit_trigger(project.id)
            await scheduler.wait()

            reloaded = StateStore(data_dir)
            reloaded.load()
            [session] = reloaded.get_all_sessions()
            assert session.status == "completed"
            assert reloaded.get_project(project.id).hours_spent > 0

        asyncio.run(scenario())


class TestStartStop:
    def test_start_and_stop_are_idempotent(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Scheduled")
            scheduler.state.create_event("time", project.id, "0 2 * * *")
            scheduler.state.create_event("webhook", project.id)

            await scheduler.start()
            drain_task = scheduler._drain_task
            await scheduler.start()
            assert scheduler._drain_task is drain_task
            assert scheduler.status()["running"] is True
            assert scheduler.status()["events"] == {"enabled": True, "schedules": 1, "paths": 0}

            await scheduler.stop()
            await scheduler.stop()
            assert scheduler.running is False
            assert scheduler.status()["events"]["enabled"] is False
            assert (data_dir / "events.json").exists()

        asyncio.run(scenario())

    def test_invalid_schedule_does_not_abort_start(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Bad cron")
            scheduler.state.create_event("time", project.id, "not a cron")
            await scheduler.start()
            assert scheduler.running is True
            assert scheduler.status()["events"]["schedules"] == 0
            await scheduler.stop()

        asyncio.run(scenario())

    def test_periodic_drain_admits_queued_work(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Ticked")
            await scheduler.start()
            scheduler.queue.enqueue(_manual(project.id, "low"))
            await _wait_for(lambda: scheduler.state.get_all_sessions())
            await scheduler.stop()
            await scheduler.wait()
            [session] = scheduler.state.get_all_sessions()
            assert session.status == "completed"

        asyncio.run(scenario())

    def test_stop_does_not_cancel_running_sessions(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir, simulation_delay=0.1)
            project = scheduler.state.create_project("In flight")
            await scheduler.start()
            scheduler.submit_trigger(project.id)
            await scheduler.stop()

            [session] = scheduler.state.get_all_sessions()
            assert scheduler.state.get_session(session.id).status == "running"
            await scheduler.wait()
            assert scheduler.state.get_session(session.id).status == "completed"

        asyncio.run(scenario())

    def test_event_changes_reregister_watches(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Events")
            await scheduler.start()

            event = scheduler.create_event("time", project.id, "*/5 * * * *", priority="high")
            assert scheduler.status()["events"]["schedules"] == 1

            scheduler.update_event(event.id, trigger="0 * * * *")
            assert scheduler.status()["events"]["schedules"] == 1

            with pytest.raises(ValueError):
                scheduler.create_event("time", project.id, "bogus")
            assert len(scheduler.state.get_all_events()) == 1

            assert scheduler.delete_event(event.id) is True
            assert scheduler.status()["events"]["schedules"] == 0
            await scheduler.stop()

        asyncio.run(scenario())

    def test_invalid_event_update_is_rolled_back(self, data_dir):
        async def scenario():
            scheduler = _scheduler(data_dir)
            project = scheduler.state.create_project("Events")
            await scheduler.start()

            event = scheduler.create_event("time", project.id, "*/5 * * * *")
            watch_task = scheduler.events._tasks[event.id]

            with pytest.raises(ValueError):
                scheduler.update_event(event.id, trigger="not a schedule", priority="low")

            stored = scheduler.state.get_event(event.id)
            assert stored.trigger == "*/5 * * * *"
            assert stored.priority == "medium"
            assert scheduler.events._tasks[event.id] is watch_task
            assert not watch_task.done()

            reloaded = StateStore(data_dir)
            reloaded.load()
            assert reloaded.get_event(event.id).trigger == "*/5 * * * *"

            assert scheduler.update_event("missing", enabled=False) is None
            await scheduler.stop()

        asyncio.run(scenario())


class TestWorkContext:
    def test_build_work_context(self, data_dir):
        state = StateStore(data_dir)
        project = state.create_project(
            "Website",
            description="Company site",
            goals=["Launch"],
            context="Uses static hosting",
            next_steps=["Write copy", "Deploy"],
        )
        text = build_work_context(project)
        assert text.startswith("# Autonomous Work Session")
        assert "## Project: Website" in text
        assert "Company site" in text
        assert "- Launch" in text
        assert "Uses static hosting" in text
        assert "- Write copy\n- Deploy" in text
        assert project.id in text
