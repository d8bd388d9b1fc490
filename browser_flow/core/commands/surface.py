"""Contract for whatever performs a single command against a page"""

from typing import Protocol, runtime_checkable

from .views import Command, ExecutionResponse


@runtime_checkable
class ExecutionSurface(Protocol):
	"""Performs one atomic command and reports success or failure

	Implementations must be safe to call again for idempotent commands. Raising
	is allowed; callers convert exceptions into failed responses.
	"""

	async def execute(self, command: Command) -> ExecutionResponse:
		...
