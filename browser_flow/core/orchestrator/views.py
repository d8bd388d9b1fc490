from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from uuid_extensions import uuid7str

from browser_flow.core.commands.views import ExecutionResponse
from browser_flow.core.intent.views import ParsingResult


class OrchestratorStatus(str, Enum):
	PENDING = "pending"
	PARSING = "parsing"
	EXECUTING = "executing"
	COMPLETED = "completed"
	FAILED = "failed"
	CLARIFICATION_REQUIRED = "clarification_required"


class OrchestratorResult(BaseModel):
	"""Outcome of turning one instruction into browser actions"""
	model_config = ConfigDict(extra='forbid')

	id: str = Field(default_factory=uuid7str)
	text: str = Field(description="Instruction as the caller sent it")
	status: OrchestratorStatus = OrchestratorStatus.PENDING
	started_at: datetime = Field(default_factory=datetime.now)
	completed_at: Optional[datetime] = None
	parsing_result: Optional[ParsingResult] = None
	response: Optional[ExecutionResponse] = None
	workflow_id: Optional[str] = Field(None, description="Set when the instruction ran as a workflow")
	errors: list[str] = Field(default_factory=list)
	warnings: list[str] = Field(default_factory=list)

	@property
	def clarification_questions(self) -> list[str]:
		if self.parsing_result is None:
			return []
		return list(self.parsing_result.clarification_questions)

	@property
	def duration_ms(self) -> Optional[float]:
		if self.completed_at is None:
			return None
		return (self.completed_at - self.started_at).total_seconds() * 1000
