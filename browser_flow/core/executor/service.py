"""Sequencing and supervision of multi-step workflows"""

import asyncio
import inspect
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from uuid_extensions import uuid7str

from browser_flow.core.commands.surface import ExecutionSurface
from browser_flow.core.commands.views import Command, ExecutionResponse, WorkflowCommand, WorkflowDefinition
from browser_flow.core.errors import (
	ConcurrencyLimitExceeded, ErrorCode, ExecutionFailure, ExecutionTimeout,
	InvalidWorkflowState, RecoveryExhausted, WorkflowNotFound,
)
from browser_flow.core.progress.service import ProgressReporter
from browser_flow.core.recovery.service import ErrorRecovery
from browser_flow.core.state.service import StateTracker
from browser_flow.core.state.views import WorkflowState, WorkflowStatus
from browser_flow.utils import elapsed_ms, time_execution_async

from .views import WorkflowOptions

logger = logging.getLogger(__name__)


@dataclass
class ActiveWorkflow:
	"""Executor-side handle of a workflow that holds a concurrency slot"""
	definition: WorkflowDefinition
	options: WorkflowOptions
	state: WorkflowState
	cancelled: bool = False
	resume_signal: Optional[asyncio.Future] = None
	finished: asyncio.Event = field(default_factory=asyncio.Event)

	@property
	def id(self) -> str:
		return self.definition.id


@dataclass
class QueuedWorkflow:
	definition: WorkflowDefinition
	options: WorkflowOptions
	future: asyncio.Future
	state: WorkflowState
	queued_at: datetime = field(default_factory=datetime.now)


def _negated(condition: Callable[[], Any]) -> Callable[[], Any]:
	"""Invert a sync or async condition"""
	async def negated() -> bool:
		result = condition()
		if inspect.isawaitable(result):
			result = await result
		return not result
	return negated


class WorkflowExecutor:
	"""Runs workflows step by step against an execution surface

	At most ``max_concurrent_workflows`` run at once. ``run`` rejects work beyond
	that limit; ``queue_workflow`` defers it and starts it when a slot frees.
	Cancellation and pausing are cooperative and only take effect between steps.
	"""

	def __init__(
		self,
		surface: ExecutionSurface,
		state_tracker: Optional[StateTracker] = None,
		error_recovery: Optional[ErrorRecovery] = None,
		progress: Optional[ProgressReporter] = None,
		max_concurrent_workflows: int = 5,
		default_step_timeout_ms: int = 30000,
		max_finished_workflows: int = 100,
	):
		self.surface = surface
		self.state_tracker = state_tracker or StateTracker()
		self.error_recovery = error_recovery if error_recovery is not None else ErrorRecovery(self.state_tracker, surface)
		self.progress = progress or ProgressReporter()
		self.max_concurrent_workflows = max_concurrent_workflows
		self.default_step_timeout_ms = default_step_timeout_ms
		self.max_finished_workflows = max_finished_workflows

		self._active: dict[str, ActiveWorkflow] = {}
		# Cancelled runs whose step in flight has not finished yet
		self._finishing: dict[str, ActiveWorkflow] = {}
		self._queue: deque[QueuedWorkflow] = deque()
		self._finished: OrderedDict[str, WorkflowState] = OrderedDict()
		self._tasks: set[asyncio.Task] = set()
		self._is_draining = False

	# Submission

	@time_execution_async("workflow_run")
	async def run(self, definition: WorkflowDefinition, options: Optional[WorkflowOptions] = None) -> ExecutionResponse:
		"""Execute a workflow now; raises ConcurrencyLimitExceeded when every slot is taken"""
		while definition.id in self._finishing:
			await self._finishing[definition.id].finished.wait()
		active = self._register(definition, options or WorkflowOptions())
		return await self._execute(active)

	def queue_workflow(self, definition: WorkflowDefinition, options: Optional[WorkflowOptions] = None) -> asyncio.Future:
		"""Start now if a slot is free, otherwise wait in FIFO order; the future resolves with the run's response"""
		options = options or WorkflowOptions()
		future = asyncio.get_running_loop().create_future()

		if len(self._active) < self.max_concurrent_workflows and not self._queue:
			self._start(definition, options, future)
			return future

		state = WorkflowState(
			id=definition.id,
			name=definition.name,
			total_steps=len(definition.steps),
			status=WorkflowStatus.QUEUED,
			context=dict(definition.context),
		)
		self._queue.append(QueuedWorkflow(definition=definition, options=options, future=future, state=state))
		logger.info(f"Queued workflow {definition.id} at position {len(self._queue)}")
		if options.report_progress:
			self.progress.report_workflow_queued(definition.id, definition.name, len(self._queue))
		return future

	def _register(self, definition: WorkflowDefinition, options: WorkflowOptions) -> ActiveWorkflow:
		if len(self._active) >= self.max_concurrent_workflows:
			raise ConcurrencyLimitExceeded(self.max_concurrent_workflows)
		if definition.id in self._active:
			raise InvalidWorkflowState(f"Workflow {definition.id} is already running")
		if definition.id in self._finishing:
			raise InvalidWorkflowState(f"Workflow {definition.id} is still finishing after cancellation")

		state = WorkflowState(
			id=definition.id,
			name=definition.name,
			total_steps=len(definition.steps),
			status=WorkflowStatus.RUNNING,
			context=dict(definition.context),
		)
		active = ActiveWorkflow(definition=definition, options=options, state=state)
		self._active[definition.id] = active
		return active

	def _start(self, definition: WorkflowDefinition, options: WorkflowOptions, future: asyncio.Future) -> None:
		try:
			active = self._register(definition, options)
		except Exception as e:
			if not future.done():
				future.set_exception(e)
			return

		task = asyncio.create_task(self._execute(active))
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

		def resolve(t: asyncio.Task) -> None:
			if future.done():
				return
			if t.cancelled():
				future.cancel()
			elif t.exception() is not None:
				future.set_exception(t.exception())
			else:
				future.set_result(t.result())

		task.add_done_callback(resolve)

	def _drain_queue(self) -> None:
		"""Start queued workflows while slots are free"""
		if self._is_draining:
			return
		self._is_draining = True
		try:
			while self._queue and len(self._active) < self.max_concurrent_workflows:
				queued = self._queue.popleft()
				if queued.future.done():
					continue
				logger.info(f"Dequeued workflow {queued.definition.id}")
				self._start(queued.definition, queued.options, queued.future)
		finally:
			self._is_draining = False

	# Execution

	async def _execute(self, active: ActiveWorkflow) -> ExecutionResponse:
		definition = active.definition
		options = active.options
		workflow_id = definition.id
		start_time = datetime.now()

		try:
			if active.cancelled:
				return self._cancelled_response(workflow_id)

			await self.state_tracker.initialize(
				workflow_id, definition.context, total_steps=len(definition.steps), name=definition.name
			)
			logger.info(f"Starting workflow {definition.name} ({workflow_id}) with {len(definition.steps)} steps")
			if options.report_progress:
				self.progress.report_workflow_start(workflow_id, definition.name, len(definition.steps))

			await self._run_steps(active)

			if active.cancelled:
				return self._cancelled_response(workflow_id)

			await self._update(active, {'status': WorkflowStatus.COMPLETED, 'end_time': datetime.now()})
			logger.info(f"Workflow {workflow_id} completed in {elapsed_ms(start_time):.0f}ms")
			if options.report_progress:
				self.progress.report_workflow_complete(workflow_id, elapsed_ms(start_time))
			return ExecutionResponse.ok(workflow_id, data={
				'results': list(active.state.results),
				'context': self.state_tracker.get_context(workflow_id),
			})

		except RecoveryExhausted as e:
			if active.cancelled:
				return self._cancelled_response(workflow_id)
			logger.error(f"Workflow {workflow_id} failed at step {e.step_number}: {e.cause}")
			await self._fail(active, str(e))
			if options.report_progress:
				self.progress.report_workflow_error(workflow_id, str(e), e.code)
			return ExecutionResponse.fail(
				workflow_id,
				ErrorCode.RECOVERY_EXHAUSTED,
				str(e),
				details=e.details,
				data={'results': list(active.state.results)},
			)

		except Exception as e:
			if active.cancelled:
				return self._cancelled_response(workflow_id)
			logger.error(f"Workflow {workflow_id} failed unexpectedly: {type(e).__name__}: {e}")
			await self._fail(active, str(e))
			if options.report_progress:
				self.progress.report_workflow_error(workflow_id, str(e), ErrorCode.WORKFLOW_EXECUTION_FAILED)
			return ExecutionResponse.fail(
				workflow_id,
				ErrorCode.WORKFLOW_EXECUTION_FAILED,
				str(e),
				details={'exception': type(e).__name__},
				data={'results': list(active.state.results)},
			)

		finally:
			await self._finalize(active)

	async def _run_steps(self, active: ActiveWorkflow) -> None:
		workflow_id = active.id
		options = active.options
		total = len(active.definition.steps)

		for step_number, command in enumerate(active.definition.steps, start=1):
			if active.cancelled:
				logger.info(f"Workflow {workflow_id} cancelled before step {step_number}")
				return

			await self._update(active, {'current_step': step_number})

			if not await self._check_condition(command, step_number):
				await self.state_tracker.record_step(workflow_id, step_number, command, skipped=True)
				if options.report_progress:
					self.progress.report_step_skipped(workflow_id, step_number, command, "condition not met")
				continue

			await self.state_tracker.record_step(workflow_id, step_number, command)
			if options.report_progress:
				self.progress.report_step_start(workflow_id, step_number, command, total)

			timeout_ms = self._step_timeout(command, options)
			step_start = datetime.now()
			response = await self._execute_step(command, step_number, timeout_ms)
			duration = elapsed_ms(step_start)

			await self.state_tracker.record_step_result(workflow_id, step_number, response, duration)
			self._sync_results(active)

			if active.cancelled:
				logger.info(f"Workflow {workflow_id} cancelled during step {step_number}")
				return

			succeeded = response.success
			if response.success:
				await self.state_tracker.set_context(workflow_id, f"step_{step_number}_result", response.data)
				if options.report_progress:
					self.progress.report_step_complete(workflow_id, step_number, command, duration, response.data)
				logger.debug(f"Step {step_number}/{total} of {workflow_id} succeeded in {duration:.0f}ms")
			else:
				succeeded = await self._handle_failure(active, command, step_number, response, timeout_ms, duration)

			# Only a step that ended in success can hand control back for a resume
			if succeeded and step_number < total and options.should_pause_after(step_number) and not active.cancelled:
				await self._pause(active, step_number)

	async def _handle_failure(
		self,
		active: ActiveWorkflow,
		command: Command,
		step_number: int,
		response: ExecutionResponse,
		timeout_ms: int,
		duration: float,
	) -> bool:
		"""True when recovery salvaged the step, False when the failure is tolerated"""
		workflow_id = active.id
		options = active.options
		error = response.error
		message = error.message if error else "Unknown error"
		code = error.code if error else ErrorCode.STEP_EXECUTION_FAILED

		if options.report_progress:
			self.progress.report_step_error(workflow_id, step_number, command, message, code, duration)

		if code == ErrorCode.STEP_TIMEOUT:
			failure: ExecutionFailure = ExecutionTimeout(timeout_ms, step_number=step_number, command=command)
			failure.response = response
		else:
			failure = ExecutionFailure(message, step_number=step_number, command=command, response=response)

		if options.continue_on_error or command.skip_on_failure:
			logger.warning(f"Step {step_number} of {workflow_id} failed, continuing: {message}")
			return False

		recovered = False
		if self.error_recovery is not None:
			recovered = await self.error_recovery.attempt_recovery(
				workflow_id, step_number, failure, options.recovery_options(timeout_ms), command
			)

		if not recovered:
			raise RecoveryExhausted(step_number, command, failure)

		self._sync_results(active)
		step = next(s for s in self.state_tracker.get_step_history(workflow_id) if s.step_number == step_number)
		if step.result is not None:
			await self.state_tracker.set_context(workflow_id, f"step_{step_number}_result", step.result.data)
		logger.info(f"Step {step_number} of {workflow_id} recovered")
		return True

	def _step_timeout(self, command: Command, options: WorkflowOptions) -> int:
		return command.timeout or options.timeout or self.default_step_timeout_ms

	async def _check_condition(self, command: Command, step_number: int) -> bool:
		if command.condition is None:
			return True
		try:
			result = command.condition()
			if inspect.isawaitable(result):
				result = await result
		except Exception as e:
			logger.warning(f"Condition for step {step_number} raised, skipping the step: {e}")
			return False
		return bool(result)

	async def _execute_step(self, command: Command, step_number: int, timeout_ms: int) -> ExecutionResponse:
		"""Run one command under the timeout race; never raises"""
		if isinstance(command, WorkflowCommand):
			return await self._execute_nested(command, timeout_ms)
		return await self.execute_command(command, timeout_ms, step_number)

	async def execute_command(
		self,
		command: Command,
		timeout_ms: Optional[int] = None,
		step_number: Optional[int] = None,
	) -> ExecutionResponse:
		"""Send one command to the surface, converting timeouts and exceptions into failed responses"""
		if isinstance(command, WorkflowCommand):
			return await self._execute_nested(command, timeout_ms or self.default_step_timeout_ms)

		timeout_ms = timeout_ms or command.timeout or self.default_step_timeout_ms
		try:
			return await asyncio.wait_for(self.surface.execute(command), timeout=timeout_ms / 1000)
		except asyncio.TimeoutError:
			return ExecutionResponse.fail(
				command.id,
				ErrorCode.STEP_TIMEOUT,
				f"Step timeout after {timeout_ms}ms",
				{'timeout_ms': timeout_ms, 'step_number': step_number},
			)
		except Exception as e:
			return ExecutionResponse.fail(
				command.id,
				ErrorCode.STEP_EXECUTION_FAILED,
				str(e),
				{'exception': type(e).__name__, 'step_number': step_number},
			)

	async def _execute_nested(self, workflow: WorkflowCommand, timeout_ms: int) -> ExecutionResponse:
		"""Run a nested workflow command's children inline, in order"""
		results = []
		for index, child in enumerate(workflow.steps, start=1):
			if not await self._check_condition(child, index):
				results.append(None)
				continue
			response = await self.execute_command(child, child.timeout or timeout_ms)
			if not response.success and not child.skip_on_failure:
				return ExecutionResponse.fail(
					workflow.id,
					ErrorCode.STEP_EXECUTION_FAILED,
					f"Nested step {index} of {workflow.name} failed: {response.error.message if response.error else 'unknown error'}",
					{'nested_step': index, 'nested_error': response.error.model_dump() if response.error else None},
					data=results,
				)
			results.append(response.data if response.success else None)
		return ExecutionResponse.ok(workflow.id, data=results)

	async def execute_parallel_steps(self, steps: list[Command], timeout_ms: Optional[int] = None) -> list[ExecutionResponse]:
		"""Run an unordered batch concurrently and wait for all of them"""
		return list(await asyncio.gather(*(self.execute_command(step, timeout_ms) for step in steps)))

	# Pause / resume / cancel

	async def _pause(self, active: ActiveWorkflow, step_number: int) -> None:
		active.resume_signal = asyncio.get_running_loop().create_future()
		await self._update(active, {'paused': True})
		logger.info(f"Workflow {active.id} paused after step {step_number}")
		if active.options.report_progress:
			self.progress.report_workflow_paused(active.id, step_number)

		await active.resume_signal
		active.resume_signal = None

		if not active.cancelled:
			await self._update(active, {'paused': False})
			if active.options.report_progress:
				self.progress.report_workflow_resumed(active.id)

	def resume_workflow(self, workflow_id: str) -> bool:
		"""Release a workflow blocked after a step; False if it is not paused"""
		active = self._active.get(workflow_id)
		if active is None or active.resume_signal is None or active.resume_signal.done():
			return False
		active.resume_signal.set_result(True)
		return True

	def is_paused(self, workflow_id: str) -> bool:
		active = self._active.get(workflow_id)
		return bool(active and active.resume_signal and not active.resume_signal.done())

	async def cancel_workflow(self, workflow_id: str) -> WorkflowState:
		"""Cancel a running or queued workflow; the step in flight is allowed to finish"""
		active = self._active.get(workflow_id)
		if active is not None:
			tracked = self.state_tracker.get_state(workflow_id)
			if tracked is not None and tracked.is_terminal:
				raise InvalidWorkflowState(f"Workflow {workflow_id} is already {tracked.status.value}")

			active.cancelled = True
			del self._active[workflow_id]
			self._finishing[workflow_id] = active
			await self._update(active, {
				'status': WorkflowStatus.CANCELLED,
				'end_time': datetime.now(),
				'paused': False,
			})
			self._remember(active.state)
			logger.info(f"Cancelled workflow {workflow_id}")
			if active.options.report_progress:
				self.progress.report_workflow_cancelled(workflow_id)
			if active.resume_signal is not None and not active.resume_signal.done():
				active.resume_signal.set_result(False)
			self._drain_queue()
			return active.state

		for queued in list(self._queue):
			if queued.definition.id == workflow_id:
				self._queue.remove(queued)
				state = queued.state.model_copy(update={'status': WorkflowStatus.CANCELLED, 'end_time': datetime.now()})
				self._remember(state)
				if queued.options.report_progress:
					self.progress.report_workflow_cancelled(workflow_id)
				if not queued.future.done():
					queued.future.set_result(self._cancelled_response(workflow_id))
				logger.info(f"Removed queued workflow {workflow_id}")
				return state

		finished = self._finished.get(workflow_id)
		if finished is not None:
			raise InvalidWorkflowState(f"Workflow {workflow_id} is already {finished.status.value}")
		raise WorkflowNotFound(workflow_id)

	# Bookkeeping

	async def _update(self, active: ActiveWorkflow, updates: dict[str, Any]) -> None:
		if self.state_tracker.has_workflow(active.id):
			active.state = await self.state_tracker.update_state(active.id, updates)
		else:
			active.state = WorkflowState.model_validate({**active.state.model_dump(), **updates})

	async def _fail(self, active: ActiveWorkflow, error: str) -> None:
		await self._update(active, {'status': WorkflowStatus.FAILED, 'end_time': datetime.now(), 'error': error})

	def _sync_results(self, active: ActiveWorkflow) -> None:
		tracked = self.state_tracker.get_state(active.id)
		if tracked is not None:
			active.state = tracked

	def _cancelled_response(self, workflow_id: str) -> ExecutionResponse:
		return ExecutionResponse.fail(workflow_id, ErrorCode.WORKFLOW_CANCELLED, "Workflow cancelled")

	def _remember(self, state: WorkflowState) -> None:
		self._finished[state.id] = state
		self._finished.move_to_end(state.id)
		while len(self._finished) > self.max_finished_workflows:
			self._finished.popitem(last=False)

	async def _finalize(self, active: ActiveWorkflow) -> None:
		workflow_id = active.id
		if self._active.get(workflow_id) is active:
			del self._active[workflow_id]
		self._sync_results(active)
		if not active.cancelled or active.state.is_terminal:
			self._remember(active.state)
		self._drain_queue()
		try:
			await self.state_tracker.cleanup(workflow_id)
		finally:
			# The id becomes reusable only once its tracker entry is gone
			if self._finishing.get(workflow_id) is active:
				del self._finishing[workflow_id]
			active.finished.set()

	# Queries

	def get_workflow_state(self, workflow_id: str) -> Optional[WorkflowState]:
		if workflow_id in self._active:
			return self.state_tracker.get_state(workflow_id) or self._active[workflow_id].state
		for queued in self._queue:
			if queued.definition.id == workflow_id:
				return queued.state
		return self._finished.get(workflow_id)

	def get_active_workflows(self) -> list[WorkflowState]:
		return [self.state_tracker.get_state(wid) or active.state for wid, active in self._active.items()]

	def get_queued_workflows(self) -> list[WorkflowState]:
		return [queued.state for queued in self._queue]

	def get_statistics(self) -> dict[str, Any]:
		by_status: dict[str, int] = {}
		for state in self._finished.values():
			by_status[state.status.value] = by_status.get(state.status.value, 0) + 1
		return {
			'active': len(self._active),
			'queued': len(self._queue),
			'finished': by_status,
			'max_concurrent_workflows': self.max_concurrent_workflows,
		}

	def set_max_concurrent_workflows(self, limit: int) -> None:
		if limit < 1:
			raise ValueError("max_concurrent_workflows must be at least 1")
		self.max_concurrent_workflows = limit
		self._drain_queue()

	async def cleanup(self) -> None:
		"""Cancel every active workflow and drop the queue"""
		for queued in list(self._queue):
			await self.cancel_workflow(queued.definition.id)
		for workflow_id in list(self._active):
			try:
				await self.cancel_workflow(workflow_id)
			except InvalidWorkflowState as e:
				logger.debug(f"Skipping cancel during cleanup: {e}")

	# Builders

	def create_workflow(
		self,
		name: str,
		steps: list[Command],
		context: Optional[dict[str, Any]] = None,
	) -> WorkflowDefinition:
		return WorkflowDefinition(name=name, steps=list(steps), context=dict(context or {}))

	def add_conditional_step(
		self,
		workflow: WorkflowDefinition,
		command: Command,
		condition: Callable[[], Any],
	) -> WorkflowDefinition:
		workflow.steps.append(command.model_copy(update={'condition': condition}))
		return workflow

	def add_retry_logic(self, workflow: WorkflowDefinition, command: Command, max_retries: int = 3) -> WorkflowDefinition:
		workflow.steps.append(command.model_copy(update={'max_retries': max_retries}))
		return workflow

	def create_conditional_workflow(
		self,
		condition: Callable[[], Any],
		true_steps: list[Command],
		false_steps: Optional[list[Command]] = None,
		name: str = "conditional",
	) -> WorkflowDefinition:
		"""Steps of the branch whose condition holds run; the others are skipped"""
		steps = [step.model_copy(update={'condition': condition}) for step in true_steps]
		steps += [
			step.model_copy(update={'condition': _negated(condition)})
			for step in (false_steps or [])
		]
		return WorkflowDefinition(name=name, steps=steps)

	def create_loop_workflow(
		self,
		steps: list[Command],
		iterations: int,
		context: Optional[dict[str, Any]] = None,
		name: str = "loop",
	) -> WorkflowDefinition:
		"""Repeat steps; every repetition gets fresh command ids"""
		if iterations < 0:
			raise ValueError("iterations must not be negative")
		expanded = [
			step.model_copy(update={'id': uuid7str()})
			for _ in range(iterations)
			for step in steps
		]
		return WorkflowDefinition(
			name=name,
			steps=expanded,
			context={**(context or {}), 'iterations': iterations},
		)
