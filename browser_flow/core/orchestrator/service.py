"""Public entry point tying parsing, execution, state and progress together"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from browser_flow.config import FlowConfig
from browser_flow.core.commands.surface import ExecutionSurface
from browser_flow.core.commands.views import Command, ExecutionResponse, WorkflowCommand, WorkflowDefinition
from browser_flow.core.errors import ConcurrencyLimitExceeded, ErrorCode
from browser_flow.core.executor.service import WorkflowExecutor
from browser_flow.core.executor.views import WorkflowOptions
from browser_flow.core.intent.inference import LanguageInferenceClient
from browser_flow.core.intent.service import IntentParser
from browser_flow.core.intent.views import ParsingContext
from browser_flow.core.progress.service import ProgressReporter, Subscription
from browser_flow.core.progress.views import ProgressEventType
from browser_flow.core.recovery.service import ErrorRecovery
from browser_flow.core.state.service import StateTracker
from browser_flow.core.state.storage import InMemoryStateStore, JsonFileStateStore, StateStore
from browser_flow.core.state.views import WorkflowState
from browser_flow.utils import time_execution_async

from .views import OrchestratorResult, OrchestratorStatus

logger = logging.getLogger(__name__)

MAX_COMMAND_HISTORY = 10


class Orchestrator:
	"""Turns instructions into browser actions

	Single commands go straight to the execution surface. Instructions that
	parse into several commands run as a workflow through the executor.
	"""

	def __init__(
		self,
		surface: ExecutionSurface,
		config: Optional[FlowConfig] = None,
		inference_client: Optional[LanguageInferenceClient] = None,
		store: Optional[StateStore] = None,
	):
		self.config = config or FlowConfig()
		self.surface = surface

		if store is None:
			if self.config.storage_directory:
				store = JsonFileStateStore(self.config.storage_directory)
			else:
				store = InMemoryStateStore()

		self.parser = IntentParser(inference_client=inference_client, config=self.config)
		self.state_tracker = StateTracker(
			store=store,
			max_snapshots=self.config.max_snapshots,
			persistence_enabled=self.config.persistence_enabled,
		)
		self.error_recovery = ErrorRecovery(self.state_tracker, surface)
		self.progress = ProgressReporter(
			queue_size=self.config.progress_queue_size,
			throttle_ms=self.config.progress_throttle_ms,
		)
		self.executor = WorkflowExecutor(
			surface,
			self.state_tracker,
			self.error_recovery,
			self.progress,
			max_concurrent_workflows=self.config.max_concurrent_workflows,
			default_step_timeout_ms=self.config.default_step_timeout_ms,
			max_finished_workflows=self.config.max_finished_workflows,
		)

		self._results: dict[str, OrchestratorResult] = {}
		self._commands_executed = 0
		self._commands_failed = 0

	@time_execution_async("process_command")
	async def process_command(
		self,
		text: str,
		context: Optional[Union[ParsingContext, dict[str, Any]]] = None,
		options: Optional[WorkflowOptions] = None,
	) -> OrchestratorResult:
		"""Parse an instruction and execute it unless clarification is needed"""
		result = OrchestratorResult(text=text, status=OrchestratorStatus.PARSING)
		self._results[result.id] = result

		try:
			parsing = await self.parser.parse(text, context)
			result.parsing_result = parsing
			result.errors.extend(parsing.errors)
			result.warnings.extend(parsing.warnings)

			if parsing.requires_clarification:
				logger.info(f"Clarification required for {text!r}: {parsing.clarification_questions}")
				return self._finish(result, OrchestratorStatus.CLARIFICATION_REQUIRED)

			commands = parsing.executable_commands(self.config.default_search_engine)
			if not commands:
				result.errors.append("No executable command could be derived")
				return self._finish(result, OrchestratorStatus.FAILED)

			result.status = OrchestratorStatus.EXECUTING
			if parsing.workflows:
				workflow = parsing.workflows[0]
				result.workflow_id = workflow.id
				response = await self.execute_workflow(workflow, options)
			else:
				response = await self.execute_command(commands[0])
			result.response = response
			self._remember_text(text, context)

			if not response.success:
				result.errors.append(response.error.message if response.error else "Execution failed")
				return self._finish(result, OrchestratorStatus.FAILED)
			return self._finish(result, OrchestratorStatus.COMPLETED)

		except Exception as e:
			logger.error(f"Processing {text!r} failed: {type(e).__name__}: {e}")
			result.errors.append(str(e))
			return self._finish(result, OrchestratorStatus.FAILED)

	def _finish(self, result: OrchestratorResult, status: OrchestratorStatus) -> OrchestratorResult:
		result.status = status
		result.completed_at = datetime.now()
		return result

	def _remember_text(self, text: str, context: Optional[Union[ParsingContext, dict[str, Any]]]) -> None:
		# Explicit contexts belong to the caller; only the default one keeps history
		if context is not None:
			return
		history = [*self.parser.context.command_history, text][-MAX_COMMAND_HISTORY:]
		self.parser.update_context(command_history=history)

	def get_result(self, result_id: str) -> Optional[OrchestratorResult]:
		return self._results.get(result_id)

	# Command submission

	async def execute_command(self, command: Command) -> ExecutionResponse:
		"""Run one command directly; errors come back as a failed response"""
		if isinstance(command, WorkflowCommand):
			definition = WorkflowDefinition(
				id=command.id, name=command.name, steps=command.steps, context=command.context
			)
			return await self.execute_workflow(definition)

		self._commands_executed += 1
		timeout_ms = command.timeout or self.config.command_timeout_ms
		try:
			response = await asyncio.wait_for(self.surface.execute(command), timeout=timeout_ms / 1000)
		except asyncio.TimeoutError:
			response = ExecutionResponse.fail(
				command.id, ErrorCode.STEP_TIMEOUT, f"Command timeout after {timeout_ms}ms", {'timeout_ms': timeout_ms}
			)
		except Exception as e:
			logger.error(f"Command {command.describe()} failed: {e}")
			response = ExecutionResponse.fail(
				command.id, ErrorCode.COMMAND_EXECUTION_FAILED, str(e), {'exception': type(e).__name__}
			)

		if not response.success:
			self._commands_failed += 1
		return response

	async def execute_workflow(
		self,
		definition: WorkflowDefinition,
		options: Optional[WorkflowOptions] = None,
	) -> ExecutionResponse:
		"""Run a workflow now; a full executor yields a failed response instead of an exception"""
		try:
			return await self.executor.run(definition, options)
		except ConcurrencyLimitExceeded as e:
			logger.warning(f"Rejected workflow {definition.id}: {e}")
			return ExecutionResponse.fail(definition.id, e.code, str(e), e.details)

	def queue_workflow(
		self,
		definition: WorkflowDefinition,
		options: Optional[WorkflowOptions] = None,
	) -> asyncio.Future:
		return self.executor.queue_workflow(definition, options)

	async def cancel_workflow(self, workflow_id: str) -> WorkflowState:
		return await self.executor.cancel_workflow(workflow_id)

	def resume_workflow(self, workflow_id: str) -> bool:
		return self.executor.resume_workflow(workflow_id)

	def get_workflow_state(self, workflow_id: str) -> Optional[WorkflowState]:
		return self.executor.get_workflow_state(workflow_id)

	def get_active_workflows(self) -> list[WorkflowState]:
		return self.executor.get_active_workflows()

	def subscribe(
		self,
		workflow_id: Optional[str] = None,
		event_types: Optional[Iterable[ProgressEventType]] = None,
	) -> Subscription:
		return self.progress.subscribe(workflow_id, event_types)

	def get_statistics(self) -> dict[str, Any]:
		by_status: dict[str, int] = {}
		for result in self._results.values():
			by_status[result.status.value] = by_status.get(result.status.value, 0) + 1
		return {
			'instructions': len(self._results),
			'instructions_by_status': by_status,
			'commands_executed': self._commands_executed,
			'commands_failed': self._commands_failed,
			'executor': self.executor.get_statistics(),
			'recovery': self.error_recovery.get_statistics(),
			'progress': self.progress.get_statistics(),
			'state': self.state_tracker.get_memory_usage(),
		}

	async def shutdown(self) -> None:
		"""Cancel outstanding workflows and drop tracked state"""
		logger.info("Shutting down orchestrator")
		await self.executor.cleanup()
		await self.state_tracker.cleanup_all()
