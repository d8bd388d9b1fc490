"""Workflow execution options"""

from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from browser_flow.core.recovery.service import RecoveryOptions


class WorkflowOptions(BaseModel):
	"""How one workflow run should behave"""
	model_config = ConfigDict(extra='forbid', populate_by_name=True)

	continue_on_error: bool = Field(
		default=False,
		validation_alias=AliasChoices('continue_on_error', 'continueOnError'),
		description="Record failed steps and keep going instead of attempting recovery",
	)
	timeout: Optional[int] = Field(
		None, gt=0, validation_alias=AliasChoices('timeout', 'perStepTimeout'), description="Default per-step timeout in ms; a step's own timeout wins"
	)
	pause_on_step: Union[bool, list[int]] = Field(
		default=False,
		validation_alias=AliasChoices('pause_on_step', 'pauseOnStep'),
		description="Wait for resume after every step (True) or after the listed step numbers",
	)
	max_retries: int = Field(
		default=2, ge=0, validation_alias=AliasChoices('max_retries', 'maxRetries'),
		description="Retry budget handed to error recovery",
	)
	retry_delay_ms: int = Field(
		default=500, ge=0, validation_alias=AliasChoices('retry_delay_ms', 'retryDelay'),
	)
	report_progress: bool = Field(default=True, validation_alias=AliasChoices('report_progress', 'reportProgress'))
	default_results: dict[int, Any] = Field(
		default_factory=dict, description="Results error recovery may substitute for failed steps"
	)

	def should_pause_after(self, step_number: int) -> bool:
		if isinstance(self.pause_on_step, bool):
			return self.pause_on_step
		return step_number in self.pause_on_step

	def recovery_options(self, step_timeout_ms: int) -> RecoveryOptions:
		return RecoveryOptions(
			max_retries=self.max_retries,
			retry_delay_ms=self.retry_delay_ms,
			timeout_ms=step_timeout_ms,
			default_results=self.default_results,
		)
