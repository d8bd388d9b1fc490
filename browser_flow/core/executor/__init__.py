"""Workflow execution module"""

from .service import WorkflowExecutor, ActiveWorkflow, QueuedWorkflow
from .views import WorkflowOptions

__all__ = ['WorkflowExecutor', 'ActiveWorkflow', 'QueuedWorkflow', 'WorkflowOptions']
