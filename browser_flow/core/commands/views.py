"""Command data models shared by the parser, executor and execution surfaces"""

from datetime import datetime
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from uuid_extensions import uuid7str

from browser_flow.core.errors import ParsingError


class BaseCommand(BaseModel):
	"""Fields every command carries regardless of its type"""
	model_config = ConfigDict(
		extra='forbid',
		alias_generator=to_camel,
		populate_by_name=True,
		arbitrary_types_allowed=True,
	)

	id: str = Field(default_factory=uuid7str)
	tab_id: Optional[int] = Field(None, description="Target tab; the active tab when unset")
	timeout: Optional[int] = Field(None, gt=0, description="Per-step timeout in milliseconds")
	skip_on_failure: bool = Field(default=False, description="Continue the workflow when this step fails")
	max_retries: Optional[int] = Field(None, ge=0, description="Retry budget used by error recovery")
	condition: Optional[Callable[[], Any]] = Field(
		None, exclude=True, description="Precondition evaluated right before execution"
	)
	timestamp: datetime = Field(default_factory=datetime.now)

	@property
	def is_idempotent(self) -> bool:
		return self.type in IDEMPOTENT_COMMAND_TYPES

	def describe(self) -> str:
		"""Short human-readable summary used in logs and progress events"""
		return self.type


class NavigateCommand(BaseCommand):
	type: Literal['navigate'] = 'navigate'
	url: str
	wait_until: Literal['load', 'domcontentloaded', 'networkidle', 'commit'] = 'load'

	def describe(self) -> str:
		return f"navigate to {self.url}"


class ClickCommand(BaseCommand):
	type: Literal['click'] = 'click'
	selector: str
	button: Literal['left', 'right', 'middle'] = 'left'
	click_count: int = Field(default=1, ge=1)

	def describe(self) -> str:
		return f"click {self.selector}"


class FillCommand(BaseCommand):
	type: Literal['fill'] = 'fill'
	selector: str
	value: str

	def describe(self) -> str:
		return f"fill {self.selector}"


class TypeCommand(BaseCommand):
	"""Types key by key; not safe to repeat since text is appended"""
	type: Literal['type'] = 'type'
	selector: str
	text: str
	delay: Optional[int] = Field(None, ge=0, description="Delay between key presses in ms")

	def describe(self) -> str:
		return f"type into {self.selector}"


class ScrollCommand(BaseCommand):
	type: Literal['scroll'] = 'scroll'
	direction: Literal['up', 'down', 'left', 'right'] = 'down'
	amount: int = Field(default=500, ge=0, description="Distance in pixels")
	position: Optional[Literal['top', 'bottom']] = Field(None, description="Jump to an edge instead of scrolling by amount")
	selector: Optional[str] = None

	def describe(self) -> str:
		if self.position:
			return f"scroll to {self.position}"
		return f"scroll {self.direction} {self.amount}px"


class WaitCommand(BaseCommand):
	type: Literal['wait'] = 'wait'
	duration: int = Field(ge=0, description="Milliseconds to wait")

	def describe(self) -> str:
		return f"wait {self.duration}ms"


class WaitForElementCommand(BaseCommand):
	type: Literal['waitForElement'] = 'waitForElement'
	selector: str
	state: Literal['attached', 'detached', 'visible', 'hidden'] = 'visible'

	def describe(self) -> str:
		return f"wait for {self.selector}"


class ExtractTextCommand(BaseCommand):
	type: Literal['extractText'] = 'extractText'
	selector: str = 'body'
	multiple: bool = Field(default=False, description="Return the text of every match instead of the first")

	def describe(self) -> str:
		return f"extract text from {self.selector}"


class ScreenshotCommand(BaseCommand):
	type: Literal['screenshot'] = 'screenshot'
	full_page: bool = False
	selector: Optional[str] = None


class CreateTabCommand(BaseCommand):
	type: Literal['createTab'] = 'createTab'
	url: Optional[str] = None
	active: bool = True


class CloseTabCommand(BaseCommand):
	type: Literal['closeTab'] = 'closeTab'


class SwitchTabCommand(BaseCommand):
	type: Literal['switchTab'] = 'switchTab'
	tab_id: int = Field(description="Tab to activate")

	def describe(self) -> str:
		return f"switch to tab {self.tab_id}"


class WorkflowCommand(BaseCommand):
	"""A nested sequence of commands run inline as one step"""
	type: Literal['workflow'] = 'workflow'
	name: str = 'workflow'
	steps: list['Command'] = Field(default_factory=list)
	context: dict[str, Any] = Field(default_factory=dict)

	def describe(self) -> str:
		return f"workflow {self.name} ({len(self.steps)} steps)"


Command = Annotated[
	Union[
		NavigateCommand,
		ClickCommand,
		FillCommand,
		TypeCommand,
		ScrollCommand,
		WaitCommand,
		WaitForElementCommand,
		ExtractTextCommand,
		ScreenshotCommand,
		CreateTabCommand,
		CloseTabCommand,
		SwitchTabCommand,
		WorkflowCommand,
	],
	Field(discriminator='type'),
]

WorkflowCommand.model_rebuild()

# Safe to re-issue against the surface after a failure
IDEMPOTENT_COMMAND_TYPES = frozenset({
	'navigate', 'click', 'fill', 'scroll', 'wait', 'waitForElement',
	'extractText', 'screenshot', 'createTab', 'closeTab', 'switchTab',
})

COMMAND_TYPES = IDEMPOTENT_COMMAND_TYPES | {'type', 'workflow'}

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(data: Any) -> Command:
	"""Validate a raw mapping (snake_case or camelCase keys) into a Command"""
	if isinstance(data, BaseCommand):
		return data
	try:
		return _command_adapter.validate_python(data)
	except ValidationError as e:
		raise ParsingError(f"Invalid command: {e.error_count()} validation error(s)", {'errors': e.errors(include_url=False)}) from e


class ExecutionError(BaseModel):
	"""Structured failure information"""
	model_config = ConfigDict(extra='forbid')

	code: str = Field(description="Machine-readable error code")
	message: str = Field(description="Human-readable description")
	details: dict[str, Any] = Field(default_factory=dict)


class ExecutionResponse(BaseModel):
	"""Outcome of executing one command or one workflow"""
	model_config = ConfigDict(extra='forbid')

	command_id: str = Field(description="ID of the command or workflow that produced this response")
	success: bool
	timestamp: datetime = Field(default_factory=datetime.now)
	data: Any = Field(None, description="Opaque result payload on success")
	error: Optional[ExecutionError] = None

	@classmethod
	def ok(cls, command_id: str, data: Any = None) -> 'ExecutionResponse':
		return cls(command_id=command_id, success=True, data=data)

	@classmethod
	def fail(
		cls,
		command_id: str,
		code: str,
		message: str,
		details: Optional[dict[str, Any]] = None,
		data: Any = None,
	) -> 'ExecutionResponse':
		return cls(
			command_id=command_id,
			success=False,
			data=data,
			error=ExecutionError(code=code, message=message, details=details or {}),
		)


class WorkflowDefinition(BaseModel):
	"""Named, ordered list of commands sharing one context"""
	model_config = ConfigDict(extra='forbid', alias_generator=to_camel, populate_by_name=True)

	id: str = Field(default_factory=uuid7str)
	name: str = Field(default='workflow', description="Human-readable name")
	description: Optional[str] = None
	steps: list[Command] = Field(default_factory=list)
	context: dict[str, Any] = Field(default_factory=dict, description="Initial context values")
	created_at: datetime = Field(default_factory=datetime.now)
