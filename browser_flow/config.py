"""Runtime configuration for the command pipeline"""

import os
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX = "BROWSER_FLOW_"


class FlowConfig(BaseModel):
	"""Tunables shared by the parser, executor, state tracker and progress reporter"""
	model_config = ConfigDict(extra='forbid', validate_assignment=True)

	# Execution
	max_concurrent_workflows: int = Field(default=5, ge=1, description="Active workflows allowed at once")
	default_step_timeout_ms: int = Field(default=30000, gt=0, description="Step timeout when neither step nor options set one")
	command_timeout_ms: int = Field(default=60000, gt=0, description="Timeout for single commands dispatched directly")
	max_finished_workflows: int = Field(default=100, ge=0, description="Terminal workflow states kept for inspection")

	# Parsing
	inference_timeout_ms: int = Field(default=30000, gt=0, description="Upper bound for one inference call")
	pattern_confidence_threshold: float = Field(default=0.8, ge=0, le=1, description="Pattern confidence above which inference is skipped")
	clarification_threshold: float = Field(default=0.7, ge=0, le=1, description="Combined confidence below which clarification is requested")
	ai_preference_margin: float = Field(default=0.2, ge=0, le=1, description="How much inference must beat patterns to win outright")
	fallback_language: str = Field(default="en", description="Language used when detection is inconclusive")
	supported_languages: list[str] = Field(default_factory=lambda: ["en", "es", "fr"])
	default_search_engine: str = Field(default="google")

	# State tracking
	max_snapshots: int = Field(default=10, ge=1, description="Snapshots retained per workflow")
	persistence_enabled: bool = Field(default=True)
	storage_directory: Optional[str] = Field(None, description="Directory for the JSON file store; in-memory when unset")

	# Progress reporting
	progress_queue_size: int = Field(default=1000, ge=1, description="Per-subscriber buffer before events are dropped")
	progress_throttle_ms: int = Field(default=0, ge=0, description="Minimum gap between non-terminal reports of one kind")

	log_level: str = Field(default="INFO")

	@field_validator('supported_languages', mode='before')
	@classmethod
	def _split_languages(cls, value: Any) -> Any:
		if isinstance(value, str):
			return [part.strip() for part in value.split(',') if part.strip()]
		return value

	@field_validator('log_level')
	@classmethod
	def _upper_level(cls, value: str) -> str:
		return value.upper()

	@classmethod
	def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> 'FlowConfig':
		"""Build a config from defaults, BROWSER_FLOW_* variables and explicit overrides"""
		values: dict[str, Any] = {}
		for name in cls.model_fields:
			raw = os.environ.get(f"{prefix}{name.upper()}")
			if raw is not None:
				values[name] = raw
		values.update(overrides)
		return cls.model_validate(values)
