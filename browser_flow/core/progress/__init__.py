"""Progress reporting module"""

from .service import ProgressReporter, Subscription
from .views import ProgressEvent, ProgressEventType, StepProgress, WorkflowProgress, TERMINAL_EVENT_TYPES

__all__ = [
	'ProgressReporter', 'Subscription',
	'ProgressEvent', 'ProgressEventType', 'StepProgress', 'WorkflowProgress', 'TERMINAL_EVENT_TYPES'
]
