"""Tests for the orchestrator entry point"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from browser_flow.config import FlowConfig
from browser_flow.core.commands import ClickCommand, NavigateCommand, WaitCommand, WorkflowCommand, WorkflowDefinition
from browser_flow.core.errors import ErrorCode
from browser_flow.core.orchestrator import Orchestrator, OrchestratorStatus
from browser_flow.core.progress import ProgressEventType
from browser_flow.core.state import JsonFileStateStore, WorkflowStatus


# Fixtures

@pytest.fixture
def orchestrator(surface):
	return Orchestrator(surface)


@pytest.fixture
def inference_client():
	"""Mock client that turns any instruction into a two-step login"""
	client = Mock()
	client.infer = AsyncMock(return_value={
		'commands': [
			{'type': 'navigate', 'parameters': {'url': 'example.com/login'}},
			{'type': 'click', 'parameters': {'selector': '#login'}},
		],
		'confidence': 0.9,
	})
	return client


class TestProcessCommand:
	"""Test instruction handling end to end"""

	@pytest.mark.asyncio
	async def test_single_command(self, orchestrator, surface):
		result = await orchestrator.process_command("go to https://example.com")

		assert result.status == OrchestratorStatus.COMPLETED
		assert result.response.success
		assert result.workflow_id is None
		assert result.duration_ms is not None
		assert [c.url for c in surface.calls] == ["https://example.com"]
		assert orchestrator.get_result(result.id) is result
		assert orchestrator.parser.context.command_history == ["go to https://example.com"]

	@pytest.mark.asyncio
	async def test_failed_command(self, orchestrator, surface):
		surface.fail('navigate', "net::ERR_NAME_NOT_RESOLVED")

		result = await orchestrator.process_command("go to https://nowhere.invalid")

		assert result.status == OrchestratorStatus.FAILED
		assert "net::ERR_NAME_NOT_RESOLVED" in result.errors

	@pytest.mark.asyncio
	async def test_clarification_required(self, orchestrator, surface):
		result = await orchestrator.process_command("do the thing")

		assert result.status == OrchestratorStatus.CLARIFICATION_REQUIRED
		assert result.clarification_questions
		assert result.response is None
		assert surface.calls == []

	@pytest.mark.asyncio
	async def test_inferred_workflow(self, surface, inference_client):
		orchestrator = Orchestrator(surface, inference_client=inference_client)

		result = await orchestrator.process_command("log me in")

		assert result.status == OrchestratorStatus.COMPLETED
		assert result.workflow_id is not None
		assert [c.type for c in surface.calls] == ['navigate', 'click']
		assert orchestrator.get_workflow_state(result.workflow_id).status == WorkflowStatus.COMPLETED

	@pytest.mark.asyncio
	async def test_explicit_context_keeps_no_history(self, orchestrator):
		await orchestrator.process_command("go to https://example.com", context={'current_url': "https://a.com"})

		assert orchestrator.parser.context.command_history == []

	@pytest.mark.asyncio
	async def test_unexpected_error_is_reported(self, orchestrator):
		orchestrator.parser.parse = AsyncMock(side_effect=RuntimeError("parser crashed"))

		result = await orchestrator.process_command("go to https://example.com")

		assert result.status == OrchestratorStatus.FAILED
		assert result.errors == ["parser crashed"]


class TestDirectExecution:
	"""Test command and workflow submission"""

	@pytest.mark.asyncio
	async def test_command_timeout(self, surface):
		orchestrator = Orchestrator(surface, FlowConfig(command_timeout_ms=50))
		surface.delay('click', 300)

		response = await orchestrator.execute_command(ClickCommand(selector="#slow"))

		assert response.error.code == ErrorCode.STEP_TIMEOUT
		assert response.error.message == "Command timeout after 50ms"
		assert orchestrator.get_statistics()['commands_failed'] == 1

	@pytest.mark.asyncio
	async def test_command_exception(self, orchestrator, surface):
		surface.raise_error('click', RuntimeError("page crashed"))

		response = await orchestrator.execute_command(ClickCommand(selector="#go"))

		assert response.error.code == ErrorCode.COMMAND_EXECUTION_FAILED
		assert response.error.message == "page crashed"

	@pytest.mark.asyncio
	async def test_workflow_command_runs_through_executor(self, orchestrator, surface):
		command = WorkflowCommand(name="login", steps=[
			NavigateCommand(url="https://example.com"),
			ClickCommand(selector="#login"),
		])

		response = await orchestrator.execute_command(command)

		assert response.success
		assert len(surface.calls) == 2
		assert orchestrator.get_workflow_state(command.id).status == WorkflowStatus.COMPLETED

	@pytest.mark.asyncio
	async def test_full_executor_returns_failed_response(self, surface):
		orchestrator = Orchestrator(surface, FlowConfig(max_concurrent_workflows=1))
		surface.delay('wait', 50)
		slow = WorkflowDefinition(steps=[WaitCommand(duration=50)])
		running = asyncio.create_task(orchestrator.execute_workflow(slow))
		await asyncio.sleep(0)

		response = await orchestrator.execute_workflow(WorkflowDefinition(steps=[WaitCommand(duration=1)]))

		assert response.error.code == ErrorCode.CONCURRENCY_LIMIT_EXCEEDED
		assert (await running).success

	@pytest.mark.asyncio
	async def test_queue_and_subscribe(self, orchestrator):
		definition = WorkflowDefinition(steps=[NavigateCommand(url="https://example.com")])
		subscription = orchestrator.subscribe(definition.id)

		response = await orchestrator.queue_workflow(definition)

		assert response.success
		types = [e.type for e in subscription.drain()]
		assert types[0] == ProgressEventType.WORKFLOW_START
		assert types[-1] == ProgressEventType.WORKFLOW_COMPLETE


class TestLifecycle:
	"""Test wiring, statistics and shutdown"""

	def test_storage_directory_uses_file_store(self, surface, tmp_path):
		orchestrator = Orchestrator(surface, FlowConfig(storage_directory=str(tmp_path)))

		assert isinstance(orchestrator.state_tracker.store, JsonFileStateStore)
		assert orchestrator.state_tracker.store.directory == Path(tmp_path)

	@pytest.mark.asyncio
	async def test_statistics(self, orchestrator):
		await orchestrator.process_command("go to https://example.com")
		await orchestrator.process_command("do the thing")

		stats = orchestrator.get_statistics()

		assert stats['instructions'] == 2
		assert stats['instructions_by_status'] == {'completed': 1, 'clarification_required': 1}
		assert stats['commands_executed'] == 1
		assert stats['executor']['active'] == 0

	@pytest.mark.asyncio
	async def test_shutdown_cancels_running_workflows(self, orchestrator, surface):
		surface.delay('wait', 100)
		definition = WorkflowDefinition(steps=[WaitCommand(duration=100), WaitCommand(duration=100)])
		future = orchestrator.queue_workflow(definition)
		await asyncio.sleep(0.01)

		await orchestrator.shutdown()

		response = await future
		assert response.error.code == ErrorCode.WORKFLOW_CANCELLED
		assert orchestrator.get_active_workflows() == []
