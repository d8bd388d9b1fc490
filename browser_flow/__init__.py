"""Natural-language browser command orchestration"""

from browser_flow.config import FlowConfig
from browser_flow.logging_config import setup_logging
from browser_flow.core import (
	Orchestrator, OrchestratorResult, OrchestratorStatus,
	IntentParser, WorkflowExecutor, WorkflowOptions, StateTracker,
	ErrorRecovery, ProgressReporter, PlaywrightExecutionSurface,
	ChatModelInferenceClient, WorkflowDefinition, ExecutionResponse
)

__all__ = [
	'FlowConfig', 'setup_logging',
	'Orchestrator', 'OrchestratorResult', 'OrchestratorStatus',
	'IntentParser', 'WorkflowExecutor', 'WorkflowOptions', 'StateTracker',
	'ErrorRecovery', 'ProgressReporter', 'PlaywrightExecutionSurface',
	'ChatModelInferenceClient', 'WorkflowDefinition', 'ExecutionResponse'
]
