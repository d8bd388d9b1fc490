"""Exception hierarchy for parsing, execution and workflow supervision"""

from typing import Any, Optional


class ErrorCode:
	"""Machine-readable codes carried by failed execution responses"""
	STEP_EXECUTION_FAILED = "STEP_EXECUTION_FAILED"
	STEP_TIMEOUT = "STEP_TIMEOUT"
	STEP_SKIPPED = "STEP_SKIPPED"
	WORKFLOW_EXECUTION_FAILED = "WORKFLOW_EXECUTION_FAILED"
	WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"
	CONCURRENCY_LIMIT_EXCEEDED = "CONCURRENCY_LIMIT_EXCEEDED"
	COMMAND_EXECUTION_FAILED = "COMMAND_EXECUTION_FAILED"
	RECOVERY_EXHAUSTED = "RECOVERY_EXHAUSTED"


class BrowserFlowError(Exception):
	"""Base class for every error raised by browser_flow"""
	code: str = "BROWSER_FLOW_ERROR"

	def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
		super().__init__(message)
		self.message = message
		self.details = details or {}


class ParsingError(BrowserFlowError):
	"""Inference output was malformed or parsing failed internally"""
	code = "PARSING_FAILED"


class ExecutionFailure(BrowserFlowError):
	"""A step's call against the execution surface failed"""
	code = ErrorCode.STEP_EXECUTION_FAILED

	def __init__(
		self,
		message: str,
		step_number: Optional[int] = None,
		command: Any = None,
		response: Any = None,
		details: Optional[dict[str, Any]] = None,
	):
		super().__init__(message, details)
		self.step_number = step_number
		self.command = command
		self.response = response


class ExecutionTimeout(ExecutionFailure):
	"""The step did not finish inside its timeout"""
	code = ErrorCode.STEP_TIMEOUT

	def __init__(self, timeout_ms: int, step_number: Optional[int] = None, command: Any = None):
		super().__init__(
			f"Step timeout after {timeout_ms}ms",
			step_number=step_number,
			command=command,
			details={'timeout_ms': timeout_ms},
		)
		self.timeout_ms = timeout_ms


class ConcurrencyLimitExceeded(BrowserFlowError):
	"""Direct submission rejected because every workflow slot is taken"""
	code = ErrorCode.CONCURRENCY_LIMIT_EXCEEDED

	def __init__(self, limit: int):
		super().__init__(f"Maximum concurrent workflows ({limit}) exceeded", {'limit': limit})
		self.limit = limit


class RecoveryExhausted(BrowserFlowError):
	"""Error recovery declined a failed step, so the workflow fails"""
	code = ErrorCode.RECOVERY_EXHAUSTED

	def __init__(self, step_number: int, command: Any, cause: BaseException):
		super().__init__(
			f"Step {step_number} failed and could not be recovered: {cause}",
			{
				'step_number': step_number,
				'command_type': getattr(command, 'type', None),
				'command_id': getattr(command, 'id', None),
				'cause': str(cause),
				'cause_type': type(cause).__name__,
			},
		)
		self.step_number = step_number
		self.command = command
		self.cause = cause


class InvalidWorkflowState(BrowserFlowError):
	"""Operation is not allowed in the workflow's current status"""
	code = "INVALID_WORKFLOW_STATE"


class WorkflowNotFound(InvalidWorkflowState, KeyError):
	"""No active, queued or finished workflow carries this id"""
	code = "WORKFLOW_NOT_FOUND"

	def __init__(self, workflow_id: str):
		InvalidWorkflowState.__init__(self, f"Workflow {workflow_id} not found", {'workflow_id': workflow_id})
		self.workflow_id = workflow_id

	def __str__(self) -> str:
		return self.message
