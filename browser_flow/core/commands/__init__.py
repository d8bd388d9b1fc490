"""Command models and execution surfaces"""

from .views import (
	Command, BaseCommand, NavigateCommand, ClickCommand, FillCommand, TypeCommand,
	ScrollCommand, WaitCommand, WaitForElementCommand, ExtractTextCommand,
	ScreenshotCommand, CreateTabCommand, CloseTabCommand, SwitchTabCommand,
	WorkflowCommand, WorkflowDefinition, ExecutionResponse, ExecutionError,
	IDEMPOTENT_COMMAND_TYPES, COMMAND_TYPES, parse_command
)
from .surface import ExecutionSurface
from .playwright_surface import PlaywrightExecutionSurface

__all__ = [
	'Command', 'BaseCommand', 'NavigateCommand', 'ClickCommand', 'FillCommand', 'TypeCommand',
	'ScrollCommand', 'WaitCommand', 'WaitForElementCommand', 'ExtractTextCommand',
	'ScreenshotCommand', 'CreateTabCommand', 'CloseTabCommand', 'SwitchTabCommand',
	'WorkflowCommand', 'WorkflowDefinition', 'ExecutionResponse', 'ExecutionError',
	'IDEMPOTENT_COMMAND_TYPES', 'COMMAND_TYPES', 'parse_command',
	'ExecutionSurface', 'PlaywrightExecutionSurface'
]
