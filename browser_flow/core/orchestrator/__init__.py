"""Orchestration entry point"""

from .service import Orchestrator
from .views import OrchestratorResult, OrchestratorStatus

__all__ = ['Orchestrator', 'OrchestratorResult', 'OrchestratorStatus']
