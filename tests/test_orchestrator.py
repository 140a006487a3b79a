"""
Integration tests for GovernedTaskOrchestrator and OrchestratorRegistry.

The task engine is an AsyncMock and the push channel is the in-memory FakeChannel,
so whole command/update round trips run in-process.
"""

import asyncio

import pytest

from governed_agent.dispatcher import PendingAction
from governed_agent.errors import ErrorKind, TaskEngineError
from governed_agent.models import AgentMode
from governed_agent.orchestrator import GovernedTaskOrchestrator, OrchestratorRegistry
from governed_agent.settings import get_settings


@pytest.fixture
def orchestrator(mock_client, fake_channel):
    return GovernedTaskOrchestrator("task-1", mock_client, fake_channel)


class TestGovernedTaskOrchestrator:
    @pytest.mark.asyncio
    async def test_start_loads_then_subscribes(self, orchestrator, mock_client, fake_channel):
        assert orchestrator.loading

        await orchestrator.start()
        await orchestrator.start()

        mock_client.get_task.assert_awaited_once_with("task-1")
        assert orchestrator.started
        assert fake_channel.task_ids == ["task-1"]
        assert orchestrator.mode is AgentMode.SCOPE
        assert not orchestrator.loading

    @pytest.mark.asyncio
    async def test_clarification_round_trip(self, orchestrator, mock_client, fake_channel):
        await orchestrator.start()

        await fake_channel.emit("connected", {"taskId": "task-1"})
        await fake_channel.emit(
            "update",
            {
                "mode": "SCOPE",
                "status": "in_progress",
                "scopeAnalysis": {"clarificationNeeded": ["Q1", "Q2"], "canProceed": False},
            },
        )

        view = orchestrator.view
        assert view.live
        assert view.questions == ["Q1", "Q2"]
        assert view.stage is AgentMode.CLARIFY
        assert not view.can_submit

        assert await orchestrator.submit_answers({"Q1": "a", "Q2": "b"}) is True
        mock_client.submit_answers.assert_awaited_once_with("task-1", {"Q1": "a", "Q2": "b"})
        assert orchestrator.view.pending_action is PendingAction.SUBMITTING_ANSWERS

        await fake_channel.emit(
            "update",
            {
                "mode": "PLAN",
                "status": "in_progress",
                "plan": {"phases": [{"name": "build", "steps": [{"id": "s1", "tool": "github"}]}]},
            },
        )

        view = orchestrator.view
        assert not view.clarifying
        assert view.mode is AgentMode.PLAN
        assert view.stage is AgentMode.PLAN
        assert view.pending_action is None
        assert view.task.plan.step_ids() == ["s1"]

    @pytest.mark.asyncio
    async def test_approve_waits_for_push_update(self, orchestrator, mock_client, fake_channel, task_factory):
        mock_client.get_task.return_value = task_factory(mode="PLAN")
        await orchestrator.start()

        assert await orchestrator.approve() is True
        assert orchestrator.mode is AgentMode.PLAN
        assert await orchestrator.go_back() is False

        await fake_channel.emit("update", {"mode": "BUILD", "status": "in_progress"})

        assert orchestrator.mode is AgentMode.BUILD
        assert orchestrator.view.pending_action is None
        assert orchestrator.view.unlocked_modes == [
            AgentMode.SCOPE,
            AgentMode.CLARIFY,
            AgentMode.PLAN,
            AgentMode.BUILD,
        ]

    @pytest.mark.asyncio
    async def test_load_failure_is_reported(self, orchestrator, mock_client, fake_channel):
        mock_client.get_task.side_effect = TaskEngineError("Task not found", status_code=404)

        await orchestrator.start()

        assert orchestrator.error.kind is ErrorKind.LOAD
        assert orchestrator.error.message == "Task not found"
        assert not orchestrator.loading
        assert fake_channel.task_ids == ["task-1"]

    @pytest.mark.asyncio
    async def test_refresh_clears_load_error(self, orchestrator, mock_client, task_factory):
        mock_client.get_task.side_effect = TaskEngineError("Task engine unavailable", status_code=503)
        await orchestrator.start()

        mock_client.get_task.side_effect = None
        mock_client.get_task.return_value = task_factory(mode="PLAN")
        await orchestrator.refresh()

        assert orchestrator.error is None
        assert orchestrator.mode is AgentMode.PLAN

    @pytest.mark.asyncio
    async def test_channel_fatal_error(self, orchestrator, fake_channel):
        await orchestrator.start()

        await fake_channel.emit("error", {"message": "Task stream failed"})

        assert orchestrator.error.kind is ErrorKind.CHANNEL
        assert orchestrator.error.message == "Task stream failed"
        assert not orchestrator.dismiss_error()
        assert fake_channel.subscription.close_calls == 1

    @pytest.mark.asyncio
    async def test_command_error_is_dismissable(self, orchestrator, mock_client, task_factory):
        mock_client.get_task.return_value = task_factory(mode="PLAN")
        mock_client.approve.side_effect = TaskEngineError("Approval token expired", status_code=403)
        await orchestrator.start()

        assert await orchestrator.approve() is False
        assert orchestrator.view.error.message == "Approval token expired"

        assert orchestrator.dismiss_error()
        assert orchestrator.error is None

    @pytest.mark.asyncio
    async def test_channel_error_outranks_command_error(self, orchestrator, mock_client, fake_channel, task_factory):
        mock_client.get_task.return_value = task_factory(mode="PLAN")
        mock_client.approve.side_effect = TaskEngineError("Approval token expired")
        await orchestrator.start()

        await fake_channel.drop()
        await orchestrator.approve()

        assert orchestrator.error.kind is ErrorKind.CHANNEL
        assert orchestrator.error.message == "Connection closed by server"

    @pytest.mark.asyncio
    async def test_close_discards_in_flight_results(self, orchestrator, mock_client, fake_channel, task_factory):
        mock_client.get_task.return_value = task_factory(mode="PLAN")
        release = asyncio.Event()

        async def slow_failure(task_id):
            await release.wait()
            raise TaskEngineError("too late")

        mock_client.approve.side_effect = slow_failure
        await orchestrator.start()

        pending = asyncio.create_task(orchestrator.approve())
        await asyncio.sleep(0)
        await orchestrator.close()
        await orchestrator.close()
        release.set()

        assert await pending is False
        assert orchestrator.error is None
        assert fake_channel.subscription.close_calls == 1
        assert await orchestrator.request_plan() is False

    @pytest.mark.asyncio
    async def test_file_generation_in_view(self, orchestrator, fake_channel):
        await orchestrator.start()

        await fake_channel.emit("file_generation", {"phase": "structure_complete", "totalFiles": 1})
        await fake_channel.emit(
            "file_generation",
            {"phase": "generating_file", "currentFile": "index.html", "completedFiles": 0, "totalFiles": 1},
        )

        payload = orchestrator.view.to_dict()
        assert payload["files"] == [{"path": "index.html", "status": "generating"}]
        assert payload["fileProgress"]["currentFile"] == "index.html"
        assert payload["overflowFiles"] == []

    @pytest.mark.asyncio
    async def test_view_to_dict(self, orchestrator, fake_channel):
        await orchestrator.start()
        await fake_channel.emit(
            "update",
            {
                "mode": "CLARIFY",
                "status": "in_progress",
                "scopeAnalysis": {"clarificationNeeded": ["Which region?"]},
            },
        )
        orchestrator.set_answer("Which region?", "EU")

        payload = orchestrator.view.to_dict()

        assert payload["taskId"] == "task-1"
        assert payload["mode"] == "CLARIFY"
        assert payload["unlockedModes"] == ["SCOPE", "CLARIFY"]
        assert payload["clarification"] == {
            "questions": ["Which region?"],
            "answers": {"Which region?": "EU"},
            "canSubmit": True,
        }
        assert payload["pendingAction"] is None
        assert payload["error"] is None

    @pytest.mark.asyncio
    async def test_refresh_past_clarify_closes_questions(self, orchestrator, mock_client, task_factory):
        mock_client.get_task.return_value = task_factory(
            scopeAnalysis={"clarificationNeeded": ["Q1"], "canProceed": False}
        )
        await orchestrator.start()
        assert orchestrator.view.questions == ["Q1"]

        mock_client.get_task.return_value = task_factory(
            mode="PLAN",
            scopeAnalysis={"clarificationNeeded": ["Q1"], "canProceed": False},
        )
        await orchestrator.refresh()

        view = orchestrator.view
        assert view.mode is AgentMode.PLAN
        assert view.stage is AgentMode.PLAN
        assert view.questions == []

    @pytest.mark.asyncio
    async def test_update_with_invalid_plan_still_moves_mode(self, orchestrator, mock_client, fake_channel, task_factory):
        mock_client.get_task.return_value = task_factory(
            mode="PLAN",
            plan={"phases": [{"name": "build", "steps": [{"id": "s1"}]}]},
        )
        await orchestrator.start()
        assert await orchestrator.approve() is True

        await fake_channel.emit(
            "update",
            {
                "mode": "BUILD",
                "status": "in_progress",
                "plan": {"phases": [{"name": "build", "steps": [{"id": "s1"}, {"id": "s1"}]}]},
            },
        )

        view = orchestrator.view
        assert view.mode is AgentMode.BUILD
        assert view.pending_action is None
        assert view.task.plan.step_ids() == ["s1"]

    @pytest.mark.asyncio
    async def test_unexpected_command_failure_releases_guard(self, orchestrator, mock_client, task_factory):
        mock_client.get_task.return_value = task_factory(mode="PLAN")
        mock_client.approve.side_effect = AttributeError("'list' object has no attribute 'get'")
        await orchestrator.start()

        assert await orchestrator.approve() is False

        assert orchestrator.view.pending_action is None
        assert orchestrator.error.kind is ErrorKind.COMMAND
        assert orchestrator.error.message == "Failed to approve and execute plan"

        mock_client.approve.side_effect = None
        assert await orchestrator.approve() is True

    @pytest.mark.asyncio
    async def test_from_settings_owns_its_clients(self, monkeypatch):
        monkeypatch.delenv("GOVERNED_API_BASE_URL", raising=False)
        monkeypatch.setenv("GOVERNED_AUTH_TOKEN", "engine-token")
        get_settings.cache_clear()

        orchestrator = GovernedTaskOrchestrator.from_settings("task-9")
        try:
            assert orchestrator.channel.stream_url("task-9") == (
                "http://localhost:8000/api/chat/governed/task-9/stream"
            )
            assert not orchestrator.started
        finally:
            await orchestrator.close()
            get_settings.cache_clear()

        assert orchestrator.client.http_client.is_closed
        assert orchestrator.channel.http_client.is_closed


class TestOrchestratorRegistry:
    @pytest.fixture
    def registry(self, mock_client, fake_channel):
        return OrchestratorRegistry(lambda task_id: GovernedTaskOrchestrator(task_id, mock_client, fake_channel))

    @pytest.mark.asyncio
    async def test_watch_reuses_running_orchestrator(self, registry, fake_channel):
        first = await registry.watch("task-1")
        second = await registry.watch("task-1")

        assert first is second
        assert registry.task_ids() == ["task-1"]
        assert fake_channel.task_ids == ["task-1"]

    @pytest.mark.asyncio
    async def test_stop(self, registry, fake_channel):
        orchestrator = await registry.watch("task-1")

        assert await registry.stop("task-1") is True
        assert await registry.stop("task-1") is False
        assert orchestrator.closed
        assert registry.get("task-1") is None
        assert fake_channel.subscription.close_calls == 1

    @pytest.mark.asyncio
    async def test_close_stops_everything(self, registry):
        first = await registry.watch("task-1")
        second = await registry.watch("task-2")

        await registry.close()

        assert first.closed and second.closed
        assert registry.task_ids() == []
