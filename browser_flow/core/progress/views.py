"""Progress event data models"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from uuid_extensions import uuid7str


class ProgressEventType(str, Enum):
	WORKFLOW_QUEUED = "workflow_queued"
	WORKFLOW_START = "workflow_start"
	STEP_START = "step_start"
	STEP_COMPLETE = "step_complete"
	STEP_ERROR = "step_error"
	STEP_SKIPPED = "step_skipped"
	WORKFLOW_PAUSED = "workflow_paused"
	WORKFLOW_RESUMED = "workflow_resumed"
	WORKFLOW_COMPLETE = "workflow_complete"
	WORKFLOW_ERROR = "workflow_error"
	WORKFLOW_CANCELLED = "workflow_cancelled"


TERMINAL_EVENT_TYPES = frozenset({
	ProgressEventType.WORKFLOW_COMPLETE,
	ProgressEventType.WORKFLOW_ERROR,
	ProgressEventType.WORKFLOW_CANCELLED,
})


class ProgressEvent(BaseModel):
	"""One discrete progress notification"""
	model_config = ConfigDict(extra='forbid', frozen=True)

	id: str = Field(default_factory=uuid7str)
	type: ProgressEventType
	workflow_id: str
	timestamp: datetime = Field(default_factory=datetime.now)
	step_number: Optional[int] = None
	total_steps: Optional[int] = None
	command_type: Optional[str] = None
	message: str = ""
	error: Optional[str] = None
	error_code: Optional[str] = None
	duration_ms: Optional[float] = None
	data: dict[str, Any] = Field(default_factory=dict)

	@property
	def is_terminal(self) -> bool:
		return self.type in TERMINAL_EVENT_TYPES


class StepProgress(BaseModel):
	model_config = ConfigDict(extra='forbid')

	workflow_id: str
	step_number: int
	command_type: Optional[str] = None
	description: Optional[str] = None
	status: str = Field(default="running", description="running|completed|failed|skipped")
	start_time: datetime = Field(default_factory=datetime.now)
	end_time: Optional[datetime] = None
	duration_ms: Optional[float] = None
	error: Optional[str] = None


class WorkflowProgress(BaseModel):
	"""Running summary of one workflow built from its events"""
	model_config = ConfigDict(extra='forbid')

	workflow_id: str
	name: Optional[str] = None
	status: str = Field(default="running", description="queued|running|paused|completed|failed|cancelled")
	total_steps: int = 0
	current_step: int = 0
	completed_steps: int = 0
	failed_steps: int = 0
	skipped_steps: int = 0
	start_time: datetime = Field(default_factory=datetime.now)
	end_time: Optional[datetime] = None
	error: Optional[str] = None

	@property
	def percentage(self) -> float:
		if not self.total_steps:
			return 100.0 if self.end_time else 0.0
		finished = self.completed_steps + self.failed_steps + self.skipped_steps
		return round(min(finished / self.total_steps, 1.0) * 100, 1)
