"""Workflow state tracking module"""

from .service import StateTracker
from .storage import StateStore, InMemoryStateStore, JsonFileStateStore
from .views import (
	WorkflowStatus, WorkflowState, StepContext, StateSnapshot,
	WorkflowExport, WorkflowStatistics, TERMINAL_STATUSES
)

__all__ = [
	'StateTracker',
	'StateStore', 'InMemoryStateStore', 'JsonFileStateStore',
	'WorkflowStatus', 'WorkflowState', 'StepContext', 'StateSnapshot',
	'WorkflowExport', 'WorkflowStatistics', 'TERMINAL_STATUSES'
]
