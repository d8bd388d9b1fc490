"""Shared fixtures: a scripted execution surface and wired-up components"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import pytest

from browser_flow.core.commands.views import Command, ExecutionResponse
from browser_flow.core.errors import ErrorCode
from browser_flow.core.progress.service import ProgressReporter
from browser_flow.core.recovery.service import ErrorRecovery
from browser_flow.core.state.service import StateTracker
from browser_flow.core.state.storage import InMemoryStateStore


@dataclass
class Outcome:
	kind: str  # ok | fail | raise
	data: Any = None
	code: str = ErrorCode.STEP_EXECUTION_FAILED
	message: str = ""
	error: Optional[BaseException] = None
	times: Optional[int] = None  # None repeats forever


class FakeSurface:
	"""Execution surface whose outcome and delay are scripted per command type

	Unscripted commands succeed with ``{'type': <command type>}``. Scripted
	outcomes are consumed in order; an outcome without ``times`` repeats.
	"""

	def __init__(self):
		self.calls: list[Command] = []
		self._scripts: dict[str, list[Outcome]] = {}
		self._delays: dict[str, float] = {}

	def succeed(self, command_type: str, data: Any = None, times: Optional[int] = None) -> 'FakeSurface':
		self._scripts.setdefault(command_type, []).append(Outcome('ok', data=data, times=times))
		return self

	def fail(
		self,
		command_type: str,
		message: str = "Step failed",
		code: str = ErrorCode.STEP_EXECUTION_FAILED,
		times: Optional[int] = None,
	) -> 'FakeSurface':
		self._scripts.setdefault(command_type, []).append(Outcome('fail', code=code, message=message, times=times))
		return self

	def raise_error(self, command_type: str, error: BaseException, times: Optional[int] = None) -> 'FakeSurface':
		self._scripts.setdefault(command_type, []).append(Outcome('raise', error=error, times=times))
		return self

	def delay(self, command_type: str, ms: float) -> 'FakeSurface':
		self._delays[command_type] = ms / 1000
		return self

	def calls_of(self, command_type: str) -> list[Command]:
		return [c for c in self.calls if c.type == command_type]

	def _next_outcome(self, command_type: str) -> Optional[Outcome]:
		for outcome in self._scripts.get(command_type, []):
			if outcome.times is None:
				return outcome
			if outcome.times > 0:
				outcome.times -= 1
				return outcome
		return None

	async def execute(self, command: Command) -> ExecutionResponse:
		self.calls.append(command)
		delay = self._delays.get(command.type)
		if delay:
			await asyncio.sleep(delay)

		outcome = self._next_outcome(command.type)
		if outcome is None:
			return ExecutionResponse.ok(command.id, {'type': command.type})
		if outcome.kind == 'raise':
			raise outcome.error
		if outcome.kind == 'fail':
			return ExecutionResponse.fail(command.id, outcome.code, outcome.message)
		return ExecutionResponse.ok(command.id, outcome.data if outcome.data is not None else {'type': command.type})


@pytest.fixture
def surface():
	return FakeSurface()


@pytest.fixture
def store():
	return InMemoryStateStore()


@pytest.fixture
def tracker(store):
	return StateTracker(store=store)


@pytest.fixture
def recovery(tracker, surface):
	return ErrorRecovery(tracker, surface)


@pytest.fixture
def progress():
	return ProgressReporter()
