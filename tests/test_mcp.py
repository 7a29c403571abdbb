"""Tests for the MCP tools, called directly with a stand-in request context."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from awm.config import Config
from awm.core.intake import pending_requests
from awm.core.state import StateStore
from awm.mcp import server


@pytest.fixture
def mcp_env():
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(data_dir=Path(tmp) / "awm")
        state = StateStore(config.data_dir)
        state.initialize()
        ctx = MagicMock()
        ctx.request_context.lifespan_context = server.AppContext(state=state, config=config)
        yield ctx, state, config


class TestProjectTools:
    def test_create_and_list(self, mcp_env):
        ctx, state, config = mcp_env
        created = server.create_project(ctx, "Research Notes", goals=["Summarize papers"])
        assert created["id"] == "research-notes"

        listed = server.list_projects(ctx)
        assert [p["id"] for p in listed] == ["research-notes"]

        reloaded = StateStore(config.data_dir)
        reloaded.load()
        assert reloaded.get_project("research-notes").goals == ["Summarize papers"]

    def test_set_status(self, mcp_env):
        ctx, _, _ = mcp_env
        server.create_project(ctx, "Proj")
        assert server.set_project_status(ctx, "proj", "paused")["status"] == "paused"
        assert server.list_projects(ctx, status="active") == []
        assert "error" in server.set_project_status(ctx, "proj", "sleeping")
        assert "error" in server.set_project_status(ctx, "ghost", "paused")

    def test_update_context_keeps_other_fields(self, mcp_env):
        ctx, _, _ = mcp_env
        server.create_project(ctx, "Proj", goals=["g"], context="old")
        updated = server.update_project_context(ctx, "proj", next_steps=["write tests"])
        assert updated["next_steps"] == ["write tests"]
        assert updated["context"] == "old"
        assert updated["goals"] == ["g"]

    def test_get_project_includes_events(self, mcp_env):
        ctx, _, _ = mcp_env
        server.create_project(ctx, "Proj")
        server.add_time_event(ctx, "proj", "0 9 * * 1", priority="low")
        detail = server.get_project(ctx, "proj")
        assert detail["events"][0]["trigger"] == "0 9 * * 1"
        assert detail["recent_sessions"] == []
        assert "error" in server.get_project(ctx, "ghost")


class TestSharedStore:
    def test_writes_from_another_process_survive(self, mcp_env):
        ctx, _, config = mcp_env
        server.create_project(ctx, "From MCP Early")

        other = StateStore(config.data_dir)
        other.load()
        other.create_project("From CLI")
        other.save()

        assert server.get_project(ctx, "from-cli")["name"] == "From CLI"
        assert server.queue_work(ctx, "from-cli")["queued"] is True
        server.create_project(ctx, "From MCP")

        on_disk = StateStore(config.data_dir)
        on_disk.load()
        names = sorted(p.name for p in on_disk.get_all_projects())
        assert names == ["From CLI", "From MCP", "From MCP Early"]


class TestWorkTools:
    def test_add_time_event_rejects_bad_schedule(self, mcp_env):
        ctx, state, _ = mcp_env
        server.create_project(ctx, "Proj")
        result = server.add_time_event(ctx, "proj", "tomorrow-ish")
        assert "error" in result
        assert state.get_all_events() == []

    def test_queue_work(self, mcp_env):
        ctx, _, config = mcp_env
        server.create_project(ctx, "Proj")
        result = server.queue_work(ctx, "proj", "high")
        assert result["queued"] is True
        assert result["pending_requests"] == 1
        assert result["daemon_running"] is False

        [request] = pending_requests(config.intake_file)
        assert request["triggered_by"] == "ai-decision"

    def test_queue_work_validation(self, mcp_env):
        ctx, _, config = mcp_env
        assert "error" in server.queue_work(ctx, "ghost")
        server.create_project(ctx, "Proj")
        assert "error" in server.queue_work(ctx, "proj", "urgent")
        assert pending_requests(config.intake_file) == []

    def test_status(self, mcp_env):
        ctx, _, _ = mcp_env
        server.create_project(ctx, "Proj")
        status = server.get_status(ctx)
        assert status["projects"] == 1
        assert status["running_sessions"] == 0
        assert status["pending_requests"] == 0
