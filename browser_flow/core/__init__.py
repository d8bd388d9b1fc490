"""Core components of the browser command pipeline"""

from .commands.views import (
	Command, BaseCommand, NavigateCommand, ClickCommand, FillCommand, TypeCommand,
	ScrollCommand, WaitCommand, WaitForElementCommand, ExtractTextCommand,
	ScreenshotCommand, CreateTabCommand, CloseTabCommand, SwitchTabCommand,
	WorkflowCommand, WorkflowDefinition, ExecutionResponse, ExecutionError, parse_command
)
from .commands.surface import ExecutionSurface
from .commands.playwright_surface import PlaywrightExecutionSurface

from .errors import (
	ErrorCode, BrowserFlowError, ParsingError, ExecutionFailure, ExecutionTimeout,
	ConcurrencyLimitExceeded, RecoveryExhausted, InvalidWorkflowState, WorkflowNotFound
)

from .intent.service import IntentParser
from .intent.inference import ChatModelInferenceClient, LanguageInferenceClient
from .intent.views import (
	CommandIntent, CommandPattern, ParsedCommand, ParsingResult, ParsingContext,
	InferenceResponse, ParseSource
)

from .state.service import StateTracker
from .state.storage import StateStore, InMemoryStateStore, JsonFileStateStore
from .state.views import WorkflowStatus, WorkflowState, StepContext, StateSnapshot

from .recovery.service import ErrorRecovery, RecoveryStrategy, RecoveryContext, RecoveryOptions

from .progress.service import ProgressReporter, Subscription
from .progress.views import ProgressEvent, ProgressEventType, WorkflowProgress

from .executor.service import WorkflowExecutor
from .executor.views import WorkflowOptions

from .orchestrator.service import Orchestrator
from .orchestrator.views import OrchestratorResult, OrchestratorStatus

__all__ = [
	# Commands
	'Command', 'BaseCommand', 'NavigateCommand', 'ClickCommand', 'FillCommand', 'TypeCommand',
	'ScrollCommand', 'WaitCommand', 'WaitForElementCommand', 'ExtractTextCommand',
	'ScreenshotCommand', 'CreateTabCommand', 'CloseTabCommand', 'SwitchTabCommand',
	'WorkflowCommand', 'WorkflowDefinition', 'ExecutionResponse', 'ExecutionError', 'parse_command',
	'ExecutionSurface', 'PlaywrightExecutionSurface',

	# Errors
	'ErrorCode', 'BrowserFlowError', 'ParsingError', 'ExecutionFailure', 'ExecutionTimeout',
	'ConcurrencyLimitExceeded', 'RecoveryExhausted', 'InvalidWorkflowState', 'WorkflowNotFound',

	# Intent parsing
	'IntentParser', 'ChatModelInferenceClient', 'LanguageInferenceClient',
	'CommandIntent', 'CommandPattern', 'ParsedCommand', 'ParsingResult', 'ParsingContext',
	'InferenceResponse', 'ParseSource',

	# State tracking
	'StateTracker', 'StateStore', 'InMemoryStateStore', 'JsonFileStateStore',
	'WorkflowStatus', 'WorkflowState', 'StepContext', 'StateSnapshot',

	# Recovery
	'ErrorRecovery', 'RecoveryStrategy', 'RecoveryContext', 'RecoveryOptions',

	# Progress
	'ProgressReporter', 'Subscription', 'ProgressEvent', 'ProgressEventType', 'WorkflowProgress',

	# Execution
	'WorkflowExecutor', 'WorkflowOptions',
	'Orchestrator', 'OrchestratorResult', 'OrchestratorStatus'
]
