"""Salvaging failed workflow steps"""

import asyncio
import functools
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from browser_flow.core.commands.surface import ExecutionSurface
from browser_flow.core.commands.views import Command, ExecutionResponse, WaitForElementCommand
from browser_flow.core.errors import ErrorCode, ExecutionTimeout
from browser_flow.core.state.service import StateTracker

logger = logging.getLogger(__name__)

NOT_FOUND_RE = re.compile(r'not found|not visible|no element|waiting for|element_not_found', re.IGNORECASE)
PERMISSION_RE = re.compile(r'permission|denied|forbidden|not allowed', re.IGNORECASE)
TIMEOUT_RE = re.compile(r'timeout|timed out', re.IGNORECASE)


class RecoveryOptions(BaseModel):
	model_config = ConfigDict(extra='forbid')

	max_retries: int = Field(default=2, ge=0, description="Retries per failed step")
	retry_delay_ms: int = Field(default=500, ge=0)
	timeout_ms: int = Field(default=30000, gt=0, description="Timeout for each recovery attempt")
	default_results: dict[int, Any] = Field(default_factory=dict, description="Fallback result per step number")


@dataclass
class RecoveryContext:
	"""What a strategy may look at and use while recovering one step"""
	workflow_id: str
	step_number: int
	command: Command
	options: RecoveryOptions
	surface: Optional[ExecutionSurface] = None
	state: dict[str, Any] = field(default_factory=dict)

	async def execute(self, command: Optional[Command] = None, timeout_ms: Optional[int] = None) -> ExecutionResponse:
		"""Run a command against the surface under a timeout, never raising"""
		command = command or self.command
		timeout_ms = timeout_ms or command.timeout or self.options.timeout_ms
		if self.surface is None:
			return ExecutionResponse.fail(command.id, ErrorCode.COMMAND_EXECUTION_FAILED, "No execution surface")
		try:
			return await asyncio.wait_for(self.surface.execute(command), timeout=timeout_ms / 1000)
		except asyncio.TimeoutError:
			return ExecutionResponse.fail(command.id, ErrorCode.STEP_TIMEOUT, f"Step timeout after {timeout_ms}ms")
		except Exception as e:
			return ExecutionResponse.fail(command.id, ErrorCode.STEP_EXECUTION_FAILED, str(e))


@dataclass
class RecoveryStrategy:
	name: str
	description: str
	can_recover: Callable[[BaseException, RecoveryContext], bool]
	recover: Callable[[BaseException, RecoveryContext], Awaitable[Optional[ExecutionResponse]]]
	max_retries: int = 1
	retry_delay_ms: int = 0


def error_message(error: BaseException) -> str:
	"""Message plus error code, so strategies can match either"""
	parts = [str(error)]
	response = getattr(error, 'response', None)
	if isinstance(response, ExecutionResponse) and response.error:
		parts.extend([response.error.code, response.error.message])
	return ' '.join(parts)


class ErrorRecovery:
	"""Tries custom strategies, then the built-in ones, until one salvages the step"""

	def __init__(self, state_tracker: StateTracker, surface: Optional[ExecutionSurface] = None):
		self.state_tracker = state_tracker
		self.surface = surface
		self._custom: list[RecoveryStrategy] = []
		self._defaults: list[RecoveryStrategy] = self._default_strategies()
		self._attempts: dict[str, int] = defaultdict(int)
		self._successes: dict[str, int] = defaultdict(int)
		self._total_attempts = 0
		self._total_recovered = 0

	# Strategy registry

	def add_strategy(self, strategy: RecoveryStrategy) -> None:
		self.remove_strategy(strategy.name)
		self._custom.append(strategy)

	def remove_strategy(self, name: str) -> bool:
		for strategies in (self._custom, self._defaults):
			for index, strategy in enumerate(strategies):
				if strategy.name == name:
					del strategies[index]
					return True
		return False

	def get_strategies(self) -> list[RecoveryStrategy]:
		return self._custom + self._defaults

	def get_strategy(self, name: str) -> Optional[RecoveryStrategy]:
		for strategy in self.get_strategies():
			if strategy.name == name:
				return strategy
		return None

	def can_recover(self, error: BaseException, context: RecoveryContext) -> bool:
		return any(self._applies(strategy, error, context) for strategy in self.get_strategies())

	def _applies(self, strategy: RecoveryStrategy, error: BaseException, context: RecoveryContext) -> bool:
		try:
			return bool(strategy.can_recover(error, context))
		except Exception as e:
			logger.warning(f"Recovery strategy {strategy.name} failed its applicability check: {e}")
			return False

	# Recovery

	async def attempt_recovery(
		self,
		workflow_id: str,
		step_number: int,
		error: BaseException,
		options: Optional[RecoveryOptions] = None,
		command: Optional[Command] = None,
	) -> bool:
		"""True when some strategy produced a successful result for the same step number"""
		options = options or RecoveryOptions()
		if command is None:
			command = getattr(error, 'command', None)
		if command is None:
			step = next((s for s in self.state_tracker.get_step_history(workflow_id) if s.step_number == step_number), None)
			command = step.command if step else None
		if command is None:
			logger.warning(f"No command recorded for step {step_number} of {workflow_id}, cannot recover")
			return False

		context = RecoveryContext(
			workflow_id=workflow_id,
			step_number=step_number,
			command=command,
			options=options,
			surface=self.surface,
		)
		self._total_attempts += 1

		for strategy in self.get_strategies():
			if not self._applies(strategy, error, context):
				continue

			self._attempts[strategy.name] += 1
			logger.debug(f"Trying recovery strategy {strategy.name} for step {step_number} of {workflow_id}")
			try:
				response = await strategy.recover(error, context)
			except Exception as e:
				logger.warning(f"Recovery strategy {strategy.name} raised: {e}")
				continue

			if response is not None and response.success:
				self._successes[strategy.name] += 1
				self._total_recovered += 1
				await self.state_tracker.record_step_result(workflow_id, step_number, response)
				logger.info(f"Recovered step {step_number} of {workflow_id} with {strategy.name}")
				return True

		logger.debug(f"No strategy recovered step {step_number} of {workflow_id}")
		return False

	def get_statistics(self) -> dict[str, Any]:
		return {
			'total_attempts': self._total_attempts,
			'total_recovered': self._total_recovered,
			'success_rate': self._total_recovered / self._total_attempts if self._total_attempts else 0.0,
			'strategies': {
				strategy.name: {
					'attempts': self._attempts[strategy.name],
					'successes': self._successes[strategy.name],
				}
				for strategy in self.get_strategies()
			},
		}

	def create_retry_wrapper(
		self,
		fn: Callable[..., Awaitable[Any]],
		options: Optional[RecoveryOptions] = None,
	) -> Callable[..., Awaitable[Any]]:
		"""Wrap a coroutine function so it is retried on exceptions"""
		options = options or RecoveryOptions()

		@functools.wraps(fn)
		async def wrapper(*args: Any, **kwargs: Any) -> Any:
			last_error: Optional[BaseException] = None
			for attempt in range(options.max_retries + 1):
				try:
					return await fn(*args, **kwargs)
				except Exception as e:
					last_error = e
					if attempt < options.max_retries:
						logger.debug(f"{fn.__name__} failed (attempt {attempt + 1}), retrying: {e}")
						await asyncio.sleep(options.retry_delay_ms / 1000)
			assert last_error is not None
			raise last_error

		return wrapper

	# Built-in strategies

	def _default_strategies(self) -> list[RecoveryStrategy]:
		return [
			RecoveryStrategy(
				name="permission_denied",
				description="Permission problems are not retried",
				can_recover=lambda error, ctx: bool(PERMISSION_RE.search(error_message(error))),
				recover=self._decline,
			),
			RecoveryStrategy(
				name="wait_for_element",
				description="Wait for a missing element to appear, then retry the step",
				can_recover=self._can_wait_for_element,
				recover=self._wait_for_element,
			),
			RecoveryStrategy(
				name="navigation_timeout",
				description="Retry a timed-out navigation once with double the timeout",
				can_recover=self._can_retry_navigation,
				recover=self._retry_navigation,
			),
			RecoveryStrategy(
				name="retry_idempotent_step",
				description="Re-execute commands that are safe to repeat",
				can_recover=self._can_retry,
				recover=self._retry,
				max_retries=2,
				retry_delay_ms=500,
			),
			RecoveryStrategy(
				name="default_result",
				description="Substitute a caller-provided default result",
				can_recover=lambda error, ctx: ctx.step_number in ctx.options.default_results,
				recover=self._default_result,
			),
		]

	async def _decline(self, error: BaseException, context: RecoveryContext) -> Optional[ExecutionResponse]:
		logger.info(f"Not recovering step {context.step_number}: permission denied")
		return None

	def _can_wait_for_element(self, error: BaseException, context: RecoveryContext) -> bool:
		return (
			context.surface is not None
			and bool(getattr(context.command, 'selector', None))
			and context.command.type != 'waitForElement'
			and bool(NOT_FOUND_RE.search(error_message(error)))
		)

	async def _wait_for_element(self, error: BaseException, context: RecoveryContext) -> Optional[ExecutionResponse]:
		wait = WaitForElementCommand(
			selector=context.command.selector,
			tab_id=context.command.tab_id,
			timeout=context.command.timeout or context.options.timeout_ms,
		)
		waited = await context.execute(wait)
		if not waited.success:
			return None
		return await context.execute()

	def _can_retry_navigation(self, error: BaseException, context: RecoveryContext) -> bool:
		if context.surface is None or context.command.type != 'navigate':
			return False
		return isinstance(error, ExecutionTimeout) or bool(TIMEOUT_RE.search(error_message(error)))

	async def _retry_navigation(self, error: BaseException, context: RecoveryContext) -> Optional[ExecutionResponse]:
		timeout_ms = getattr(error, 'timeout_ms', None) or context.command.timeout or context.options.timeout_ms
		retry = context.command.model_copy(update={'timeout': timeout_ms * 2})
		return await context.execute(retry, timeout_ms=timeout_ms * 2)

	def _can_retry(self, error: BaseException, context: RecoveryContext) -> bool:
		if context.surface is None or not context.command.is_idempotent:
			return False
		if PERMISSION_RE.search(error_message(error)):
			return False
		return self._retry_budget(context) > 0

	def _retry_budget(self, context: RecoveryContext) -> int:
		if context.command.max_retries is not None:
			return context.command.max_retries
		return context.options.max_retries

	async def _retry(self, error: BaseException, context: RecoveryContext) -> Optional[ExecutionResponse]:
		response: Optional[ExecutionResponse] = None
		for attempt in range(1, self._retry_budget(context) + 1):
			await asyncio.sleep(context.options.retry_delay_ms / 1000)
			response = await context.execute()
			if response.success:
				logger.debug(f"Step {context.step_number} succeeded on retry {attempt}")
				return response
		return response

	async def _default_result(self, error: BaseException, context: RecoveryContext) -> Optional[ExecutionResponse]:
		return ExecutionResponse.ok(context.command.id, data=context.options.default_results[context.step_number])
