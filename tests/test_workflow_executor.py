"""Tests for workflow execution, pausing, cancellation and queuing"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from browser_flow.core.commands import (
	ClickCommand, ExtractTextCommand, NavigateCommand, TypeCommand, WaitCommand,
	WorkflowCommand, WorkflowDefinition,
)
from browser_flow.core.errors import (
	ConcurrencyLimitExceeded, ErrorCode, InvalidWorkflowState, WorkflowNotFound,
)
from browser_flow.core.executor import WorkflowExecutor, WorkflowOptions
from browser_flow.core.progress import ProgressEventType
from browser_flow.core.state import WorkflowStatus


FAST = WorkflowOptions(retry_delay_ms=1)


# Fixtures

@pytest.fixture
def executor(surface, tracker, recovery, progress):
	"""Executor wired to the scripted surface"""
	return WorkflowExecutor(surface, tracker, recovery, progress, default_step_timeout_ms=1000)


@pytest.fixture
def kept_state(tracker, monkeypatch):
	"""Keep tracker state after runs so history can be inspected"""
	monkeypatch.setattr(tracker, 'cleanup', AsyncMock())
	return tracker


def _three_steps(**context):
	return WorkflowDefinition(
		name="three steps",
		steps=[
			NavigateCommand(url="https://example.com"),
			ClickCommand(selector="#search"),
			ExtractTextCommand(selector="h1"),
		],
		context=context,
	)


def _slow(name="slow", steps=2):
	return WorkflowDefinition(name=name, steps=[WaitCommand(duration=1) for _ in range(steps)])


async def _wait_until(predicate, timeout=2.0):
	loop = asyncio.get_running_loop()
	deadline = loop.time() + timeout
	while not predicate():
		if loop.time() > deadline:
			raise AssertionError("condition not reached in time")
		await asyncio.sleep(0.005)


class TestSequentialExecution:
	"""Test the step loop"""

	@pytest.mark.asyncio
	async def test_all_steps_succeed(self, executor, surface):
		definition = _three_steps(query="cats")

		response = await executor.run(definition, FAST)

		assert response.success
		assert [c.type for c in surface.calls] == ['navigate', 'click', 'extractText']
		assert len(response.data['results']) == 3
		assert response.data['context']['query'] == "cats"
		assert response.data['context']['step_2_result'] == {'type': 'click'}
		state = executor.get_workflow_state(definition.id)
		assert state.status == WorkflowStatus.COMPLETED
		assert state.current_step == 3
		assert state.end_time is not None

	@pytest.mark.asyncio
	async def test_failed_step_stops_workflow(self, executor, surface):
		"""Step 2 fails without continue_on_error: two results, failed, step 3 never runs"""
		surface.fail('click', "Button is disabled")
		definition = _three_steps()

		response = await executor.run(definition, FAST)

		assert not response.success
		assert response.error.code == ErrorCode.RECOVERY_EXHAUSTED
		assert response.error.details['step_number'] == 2
		assert response.error.details['command_type'] == 'click'
		state = executor.get_workflow_state(definition.id)
		assert state.status == WorkflowStatus.FAILED
		assert [r.success for r in state.results] == [True, False]
		assert surface.calls_of('extractText') == []

	@pytest.mark.asyncio
	async def test_continue_on_error(self, executor, surface):
		surface.fail('click')

		response = await executor.run(_three_steps(), WorkflowOptions(continue_on_error=True))

		assert response.success
		assert [r.success for r in response.data['results']] == [True, False, True]
		assert len(surface.calls_of('click')) == 1

	@pytest.mark.asyncio
	async def test_recovered_step_continues(self, executor, surface):
		surface.fail('click', times=1).succeed('click', {'clicked': True})

		response = await executor.run(_three_steps(), FAST)

		assert response.success
		assert [r.success for r in response.data['results']] == [True, True, True]
		assert response.data['context']['step_2_result'] == {'clicked': True}

	@pytest.mark.asyncio
	async def test_surface_exception_becomes_failure(self, executor, surface):
		surface.raise_error('type', RuntimeError("socket closed"))
		definition = WorkflowDefinition(steps=[TypeCommand(selector="#q", text="cats")])

		response = await executor.run(definition, FAST)

		assert not response.success
		assert response.error.details['cause'] == "socket closed"
		assert executor.get_workflow_state(definition.id).status == WorkflowStatus.FAILED

	@pytest.mark.asyncio
	async def test_step_numbers_with_skipped_step(self, executor, surface, kept_state):
		"""Skipped steps keep their ordinal in the history"""
		definition = WorkflowDefinition(steps=[
			NavigateCommand(url="https://example.com"),
			ClickCommand(selector="#banner", condition=lambda: False),
			ExtractTextCommand(selector="h1"),
		])

		response = await executor.run(definition, FAST)

		assert response.success
		history = kept_state.get_step_history(definition.id)
		assert [s.step_number for s in history] == [1, 2, 3]
		assert [s.skipped for s in history] == [False, True, False]
		assert surface.calls_of('click') == []

	@pytest.mark.asyncio
	async def test_conditions(self, executor, surface):
		async def ready():
			return True

		def broken():
			raise RuntimeError("no context")

		definition = WorkflowDefinition(steps=[
			ClickCommand(selector="#a", condition=ready),
			ClickCommand(selector="#b", condition=broken),
		])

		response = await executor.run(definition, FAST)

		assert response.success
		assert [c.selector for c in surface.calls] == ["#a"]

	@pytest.mark.asyncio
	async def test_nested_workflow_step(self, executor, surface):
		nested = WorkflowCommand(name="login", steps=[
			TypeCommand(selector="#user", text="alice"),
			ClickCommand(selector="#submit"),
		])

		response = await executor.run(WorkflowDefinition(steps=[nested]), FAST)

		assert response.success
		assert [c.type for c in surface.calls] == ['type', 'click']
		assert len(response.data['results'][0].data) == 2

	@pytest.mark.asyncio
	async def test_progress_events(self, executor, progress):
		subscription = progress.subscribe()
		definition = _three_steps()

		await executor.run(definition, FAST)

		types = [e.type for e in subscription.drain()]
		assert types[0] == ProgressEventType.WORKFLOW_START
		assert types.count(ProgressEventType.STEP_START) == 3
		assert types.count(ProgressEventType.STEP_COMPLETE) == 3
		assert types[-1] == ProgressEventType.WORKFLOW_COMPLETE

	@pytest.mark.asyncio
	async def test_progress_can_be_disabled(self, executor, progress):
		await executor.run(_three_steps(), WorkflowOptions(report_progress=False))

		assert progress.get_history() == []


class TestTimeouts:
	"""Test the per-step timeout race"""

	@pytest.mark.asyncio
	async def test_timeout_with_skip_on_failure(self, executor, surface, progress):
		"""A 100ms step on a 500ms surface times out and the workflow moves on"""
		surface.delay('click', 500)
		definition = WorkflowDefinition(steps=[
			ClickCommand(selector="#slow", timeout=100, skip_on_failure=True),
			ExtractTextCommand(selector="h1"),
		])

		response = await executor.run(definition, FAST)

		assert response.success
		first, second = response.data['results']
		assert first.error.code == ErrorCode.STEP_TIMEOUT
		assert first.error.message == "Step timeout after 100ms"
		assert second.success
		errors = progress.get_history(definition.id, [ProgressEventType.STEP_ERROR])
		assert errors[0].error_code == ErrorCode.STEP_TIMEOUT

	@pytest.mark.asyncio
	async def test_timeout_without_skip_fails_workflow(self, executor, surface):
		surface.delay('click', 500)
		definition = WorkflowDefinition(steps=[ClickCommand(selector="#slow", timeout=100)])

		response = await executor.run(definition, WorkflowOptions(max_retries=0))

		assert not response.success
		assert response.error.details['cause_type'] == 'ExecutionTimeout'

	@pytest.mark.asyncio
	async def test_options_timeout_is_the_default(self, executor, surface):
		surface.delay('click', 300)
		definition = WorkflowDefinition(steps=[ClickCommand(selector="#slow", skip_on_failure=True)])

		response = await executor.run(definition, WorkflowOptions(timeout=50))

		assert response.data['results'][0].error.message == "Step timeout after 50ms"


class TestPauseAndCancel:
	"""Test cooperative pausing and cancellation"""

	@pytest.mark.asyncio
	async def test_pause_and_resume(self, executor, surface, progress):
		definition = _three_steps()
		task = asyncio.create_task(executor.run(definition, WorkflowOptions(pause_on_step=[1])))

		await _wait_until(lambda: executor.is_paused(definition.id))
		assert len(surface.calls) == 1
		assert executor.get_workflow_state(definition.id).paused
		assert executor.get_workflow_state(definition.id).status == WorkflowStatus.RUNNING

		assert executor.resume_workflow(definition.id) is True
		response = await task

		assert response.success
		assert len(surface.calls) == 3
		types = [e.type for e in progress.get_history(definition.id)]
		assert ProgressEventType.WORKFLOW_PAUSED in types
		assert ProgressEventType.WORKFLOW_RESUMED in types

	@pytest.mark.asyncio
	async def test_no_pause_after_tolerated_failure(self, executor, surface, progress):
		surface.fail('click')
		definition = WorkflowDefinition(
			name="pause after failure",
			steps=[ClickCommand(selector="#missing"), ExtractTextCommand(selector="h1")],
		)
		options = WorkflowOptions(pause_on_step=True, continue_on_error=True)

		response = await asyncio.wait_for(executor.run(definition, options), timeout=1)

		assert response.success
		assert [r.success for r in response.data['results']] == [False, True]
		types = [e.type for e in progress.get_history(definition.id)]
		assert ProgressEventType.WORKFLOW_PAUSED not in types

	@pytest.mark.asyncio
	async def test_resume_when_not_paused(self, executor):
		assert executor.resume_workflow("missing") is False

	@pytest.mark.asyncio
	async def test_cancel_running_workflow(self, executor, surface):
		"""Cancelling waits for the step in flight and prevents the next one"""
		surface.delay('navigate', 100)
		definition = _three_steps()
		task = asyncio.create_task(executor.run(definition, FAST))
		await _wait_until(lambda: len(surface.calls) == 1)

		state = await executor.cancel_workflow(definition.id)

		assert state.status == WorkflowStatus.CANCELLED
		assert executor.get_active_workflows() == []
		response = await task
		assert response.error.code == ErrorCode.WORKFLOW_CANCELLED
		assert [c.type for c in surface.calls] == ['navigate']
		assert executor.get_workflow_state(definition.id).status == WorkflowStatus.CANCELLED

	@pytest.mark.asyncio
	async def test_cancel_paused_workflow(self, executor, surface):
		definition = _three_steps()
		task = asyncio.create_task(executor.run(definition, WorkflowOptions(pause_on_step=True)))
		await _wait_until(lambda: executor.is_paused(definition.id))

		await executor.cancel_workflow(definition.id)
		response = await asyncio.wait_for(task, timeout=1)

		assert response.error.code == ErrorCode.WORKFLOW_CANCELLED
		assert len(surface.calls) == 1

	@pytest.mark.asyncio
	async def test_resubmit_after_cancel_waits_for_cancelled_run(self, executor, surface):
		"""The cancelled run cleans up before the same id starts again"""
		surface.delay('navigate', 200)
		definition = _three_steps()
		task = asyncio.create_task(executor.run(definition, FAST))
		await _wait_until(lambda: len(surface.calls) == 1)

		await executor.cancel_workflow(definition.id)
		second = await executor.run(definition, FAST)

		assert second.success
		assert (await task).error.code == ErrorCode.WORKFLOW_CANCELLED
		assert [c.type for c in surface.calls] == ['navigate', 'navigate', 'click', 'extractText']
		assert executor.get_workflow_state(definition.id).status == WorkflowStatus.COMPLETED

	@pytest.mark.asyncio
	async def test_queued_resubmit_while_finishing_is_rejected(self, executor, surface):
		surface.delay('navigate', 200)
		definition = _three_steps()
		task = asyncio.create_task(executor.run(definition, FAST))
		await _wait_until(lambda: len(surface.calls) == 1)

		await executor.cancel_workflow(definition.id)
		future = executor.queue_workflow(definition, FAST)

		with pytest.raises(InvalidWorkflowState):
			await future
		assert (await task).error.code == ErrorCode.WORKFLOW_CANCELLED

	@pytest.mark.asyncio
	async def test_cancel_finished_workflow_is_invalid(self, executor):
		definition = _three_steps()
		await executor.run(definition, FAST)

		with pytest.raises(InvalidWorkflowState):
			await executor.cancel_workflow(definition.id)

	@pytest.mark.asyncio
	async def test_cancel_unknown_workflow(self, executor):
		with pytest.raises(WorkflowNotFound):
			await executor.cancel_workflow("missing")


class TestConcurrency:
	"""Test the active-workflow cap and the queue"""

	@pytest.mark.asyncio
	async def test_direct_run_is_rejected_when_full(self, surface, tracker, recovery, progress):
		executor = WorkflowExecutor(surface, tracker, recovery, progress, max_concurrent_workflows=1)
		surface.delay('wait', 50)
		first = asyncio.create_task(executor.run(_slow()))
		await asyncio.sleep(0)

		with pytest.raises(ConcurrencyLimitExceeded):
			await executor.run(_slow())
		assert (await first).success

	@pytest.mark.asyncio
	async def test_duplicate_id_is_rejected(self, executor, surface):
		surface.delay('wait', 50)
		definition = _slow()
		first = asyncio.create_task(executor.run(definition))
		await asyncio.sleep(0)

		with pytest.raises(InvalidWorkflowState):
			await executor.run(definition)
		await first

	@pytest.mark.asyncio
	async def test_queued_workflow_starts_when_slot_frees(self, surface, tracker, recovery, progress):
		"""With one slot, B waits in the queue and starts as soon as A completes"""
		executor = WorkflowExecutor(surface, tracker, recovery, progress, max_concurrent_workflows=1)
		surface.delay('wait', 30)
		a, b, c = _slow("a"), _slow("b"), _slow("c")

		future_a = executor.queue_workflow(a)
		future_b = executor.queue_workflow(b)
		future_c = executor.queue_workflow(c)

		assert executor.get_workflow_state(b.id).status == WorkflowStatus.QUEUED
		assert [s.id for s in executor.get_queued_workflows()] == [b.id, c.id]

		assert (await future_a).success
		assert [s.id for s in executor.get_active_workflows()] == [b.id]
		assert [s.id for s in executor.get_queued_workflows()] == [c.id]

		assert (await future_b).success
		assert (await future_c).success
		queued_events = progress.get_history(event_types=[ProgressEventType.WORKFLOW_QUEUED])
		assert [e.workflow_id for e in queued_events] == [b.id, c.id]

	@pytest.mark.asyncio
	async def test_cancel_queued_workflow(self, surface, tracker, recovery, progress):
		executor = WorkflowExecutor(surface, tracker, recovery, progress, max_concurrent_workflows=1)
		surface.delay('wait', 30)
		a, b = _slow("a"), _slow("b")
		future_a = executor.queue_workflow(a)
		future_b = executor.queue_workflow(b)

		state = await executor.cancel_workflow(b.id)

		assert state.status == WorkflowStatus.CANCELLED
		assert (await future_b).error.code == ErrorCode.WORKFLOW_CANCELLED
		assert (await future_a).success
		assert len(surface.calls) == 2

	@pytest.mark.asyncio
	async def test_raising_the_limit_drains_queue(self, surface, tracker, recovery, progress):
		executor = WorkflowExecutor(surface, tracker, recovery, progress, max_concurrent_workflows=1)
		surface.delay('wait', 30)
		futures = [executor.queue_workflow(_slow(str(i))) for i in range(3)]

		executor.set_max_concurrent_workflows(3)

		assert len(executor.get_active_workflows()) == 3
		assert executor.get_queued_workflows() == []
		assert all(r.success for r in await asyncio.gather(*futures))
		with pytest.raises(ValueError):
			executor.set_max_concurrent_workflows(0)

	@pytest.mark.asyncio
	async def test_cleanup_cancels_everything(self, surface, tracker, recovery, progress):
		executor = WorkflowExecutor(surface, tracker, recovery, progress, max_concurrent_workflows=1)
		surface.delay('wait', 30)
		futures = [executor.queue_workflow(_slow(str(i))) for i in range(2)]

		await executor.cleanup()

		responses = await asyncio.gather(*futures)
		assert all(r.error.code == ErrorCode.WORKFLOW_CANCELLED for r in responses)
		stats = executor.get_statistics()
		assert stats['active'] == 0 and stats['queued'] == 0
		assert stats['finished'] == {'cancelled': 2}

	@pytest.mark.asyncio
	async def test_parallel_steps(self, executor, surface):
		surface.delay('extractText', 20)
		steps = [ExtractTextCommand(selector=s) for s in ("h1", "h2", "p")]

		responses = await executor.execute_parallel_steps(steps)

		assert [r.command_id for r in responses] == [s.id for s in steps]
		assert all(r.success for r in responses)


class TestBuilders:
	"""Test workflow construction helpers"""

	def test_create_workflow(self, executor):
		workflow = executor.create_workflow("demo", [NavigateCommand(url="https://example.com")], {'a': 1})

		assert workflow.name == "demo"
		assert workflow.context == {'a': 1}
		assert len(workflow.steps) == 1

	def test_conditional_and_retry_steps(self, executor):
		workflow = executor.create_workflow("demo", [])
		executor.add_conditional_step(workflow, ClickCommand(selector="#a"), lambda: True)
		executor.add_retry_logic(workflow, ClickCommand(selector="#b"), max_retries=5)

		assert workflow.steps[0].condition() is True
		assert workflow.steps[1].max_retries == 5

	@pytest.mark.asyncio
	async def test_conditional_workflow_runs_one_branch(self, executor, surface):
		workflow = executor.create_conditional_workflow(
			lambda: False,
			[ClickCommand(selector="#yes")],
			[ClickCommand(selector="#no")],
		)

		response = await executor.run(workflow, FAST)

		assert response.success
		assert [c.selector for c in surface.calls] == ["#no"]

	@pytest.mark.asyncio
	async def test_conditional_workflow_with_async_condition(self, executor, surface):
		async def is_logged_in():
			return False

		workflow = executor.create_conditional_workflow(
			is_logged_in,
			[ClickCommand(selector="#logout")],
			[ClickCommand(selector="#login")],
		)

		response = await executor.run(workflow, FAST)

		assert response.success
		assert [c.selector for c in surface.calls] == ["#login"]

	def test_loop_workflow(self, executor):
		steps = [ClickCommand(selector="#next"), WaitCommand(duration=10)]

		workflow = executor.create_loop_workflow(steps, 3)

		assert len(workflow.steps) == 6
		assert len({s.id for s in workflow.steps}) == 6
		assert workflow.context['iterations'] == 3
		with pytest.raises(ValueError):
			executor.create_loop_workflow(steps, -1)


class TestOptions:
	"""Test option parsing"""

	def test_per_step_timeout_alias(self):
		assert WorkflowOptions.model_validate({'perStepTimeout': 50}).timeout == 50
		assert WorkflowOptions(timeout=50).timeout == 50

	def test_timeout_must_be_positive(self):
		with pytest.raises(ValidationError):
			WorkflowOptions.model_validate({'perStepTimeout': 0})
