"""Workflow state data models"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from browser_flow.core.commands.views import Command, ExecutionResponse


class WorkflowStatus(str, Enum):
	"""Top-level workflow status; pausing is a flag, not a status"""
	QUEUED = "queued"
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	CANCELLED = "cancelled"

	@property
	def is_terminal(self) -> bool:
		return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED})


class WorkflowState(BaseModel):
	"""Live view of one workflow run"""
	model_config = ConfigDict(extra='forbid')

	id: str = Field(description="Same id as the workflow definition")
	name: Optional[str] = None
	current_step: int = Field(default=0, ge=0, description="1-based step being executed, 0 before the first")
	total_steps: int = Field(default=0, ge=0)
	status: WorkflowStatus = WorkflowStatus.RUNNING
	paused: bool = Field(default=False, description="Blocked waiting for an external resume")
	start_time: datetime = Field(default_factory=datetime.now)
	end_time: Optional[datetime] = None
	context: dict[str, Any] = Field(default_factory=dict, description="Snapshot of the workflow context")
	results: list[ExecutionResponse] = Field(default_factory=list, description="Step results in step order")
	error: Optional[str] = None

	@model_validator(mode='after')
	def _check_invariants(self) -> 'WorkflowState':
		if self.current_step > self.total_steps:
			raise ValueError(f"current_step {self.current_step} exceeds total_steps {self.total_steps}")
		if self.status.is_terminal and self.end_time is None:
			raise ValueError(f"status {self.status.value} requires end_time")
		return self

	@property
	def is_terminal(self) -> bool:
		return self.status.is_terminal

	@property
	def duration_ms(self) -> float:
		end = self.end_time or datetime.now()
		return (end - self.start_time).total_seconds() * 1000


class StepContext(BaseModel):
	"""One entry in a workflow's append-only step history"""
	model_config = ConfigDict(extra='forbid')

	step_number: int = Field(ge=1)
	command: Command
	result: Optional[ExecutionResponse] = None
	skipped: bool = Field(default=False, description="Precondition was false; the step did not run")
	start_time: datetime = Field(default_factory=datetime.now)
	duration_ms: Optional[float] = None


class StateSnapshot(BaseModel):
	"""Immutable copy of state and context at a checkpoint"""
	model_config = ConfigDict(extra='forbid', frozen=True)

	state: WorkflowState
	context: dict[str, Any] = Field(default_factory=dict)
	timestamp: datetime = Field(default_factory=datetime.now)
	reason: str = Field(default="manual", description="What triggered the snapshot")


class WorkflowExport(BaseModel):
	"""Portable bundle of everything tracked for one workflow"""
	model_config = ConfigDict(extra='forbid')

	version: str = "1.0"
	workflow_id: str
	state: WorkflowState
	context: dict[str, Any] = Field(default_factory=dict)
	step_history: list[StepContext] = Field(default_factory=list)
	snapshots: list[StateSnapshot] = Field(default_factory=list)
	exported_at: datetime = Field(default_factory=datetime.now)


class WorkflowStatistics(BaseModel):
	model_config = ConfigDict(extra='forbid')

	workflow_id: str
	status: WorkflowStatus
	duration_ms: float
	total_steps: int
	completed_steps: int
	failed_steps: int
	skipped_steps: int
	success_rate: float = Field(ge=0, le=1)
	average_step_duration_ms: float
	snapshot_count: int
