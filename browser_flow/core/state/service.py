"""Per-workflow state, context, step history and snapshots"""

import copy
import json
import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Optional, Union

from pydantic import TypeAdapter
from uuid_extensions import uuid7str

from browser_flow.core.commands.views import Command, ExecutionResponse
from browser_flow.core.errors import WorkflowNotFound

from .storage import StateStore
from .views import (
	StateSnapshot, StepContext, WorkflowExport, WorkflowState,
	WorkflowStatistics, WorkflowStatus,
)

logger = logging.getLogger(__name__)

_context_adapter = TypeAdapter(dict[str, Any])
_history_adapter = TypeAdapter(list[StepContext])
_snapshots_adapter = TypeAdapter(list[StateSnapshot])


def state_key(workflow_id: str) -> str:
	return f"workflow_state_{workflow_id}"


def context_key(workflow_id: str) -> str:
	return f"workflow_context_{workflow_id}"


def history_key(workflow_id: str) -> str:
	return f"step_history_{workflow_id}"


def snapshots_key(workflow_id: str) -> str:
	return f"state_snapshots_{workflow_id}"


class StateTracker:
	"""Keeps the live record of every tracked workflow

	Memory is the source of truth. Every mutation is mirrored to the optional
	store on a best-effort basis: store failures are logged and never raised.
	"""

	def __init__(
		self,
		store: Optional[StateStore] = None,
		max_snapshots: int = 10,
		persistence_enabled: bool = True,
	):
		self.store = store
		self.max_snapshots = max_snapshots
		self.persistence_enabled = persistence_enabled
		self._states: dict[str, WorkflowState] = {}
		self._contexts: dict[str, dict[str, Any]] = {}
		self._history: dict[str, list[StepContext]] = {}
		self._snapshots: dict[str, deque[StateSnapshot]] = {}

	# Lifecycle

	async def initialize(
		self,
		workflow_id: str,
		initial_context: Optional[dict[str, Any]] = None,
		total_steps: int = 0,
		name: Optional[str] = None,
	) -> WorkflowState:
		"""Start tracking a workflow as running at step 0"""
		context = dict(initial_context or {})
		state = WorkflowState(
			id=workflow_id,
			name=name,
			total_steps=total_steps,
			status=WorkflowStatus.RUNNING,
			context=copy.deepcopy(context),
		)
		self._states[workflow_id] = state
		self._contexts[workflow_id] = context
		self._history[workflow_id] = []
		self._snapshots[workflow_id] = deque(maxlen=self.max_snapshots)

		await self.snapshot(workflow_id, reason="initialize")
		await self._persist_state(workflow_id)
		await self._persist_context(workflow_id)
		await self._persist_history(workflow_id)
		logger.debug(f"Tracking workflow {workflow_id} ({total_steps} steps)")
		return state

	async def update_state(self, workflow_id: str, updates: dict[str, Any]) -> WorkflowState:
		"""Merge fields into the state; validation rejects updates that break its invariants"""
		current = self._require(workflow_id)
		merged = {**{name: getattr(current, name) for name in WorkflowState.model_fields}, **updates}
		state = WorkflowState.model_validate(merged)
		self._states[workflow_id] = state

		if state.status != current.status or state.current_step != current.current_step:
			await self.snapshot(workflow_id, reason=f"{state.status.value}:step_{state.current_step}")
		await self._persist_state(workflow_id)
		return state

	async def record_step(
		self,
		workflow_id: str,
		step_number: int,
		command: Command,
		skipped: bool = False,
	) -> StepContext:
		"""Append a step to the history; recording the same step number again returns the existing entry"""
		self._require(workflow_id)
		history = self._history[workflow_id]
		for step in history:
			if step.step_number == step_number:
				return step

		step = StepContext(step_number=step_number, command=command, skipped=skipped)
		history.append(step)
		await self.snapshot(workflow_id, reason=f"record_step_{step_number}")
		await self._persist_history(workflow_id)
		return step

	async def record_step_result(
		self,
		workflow_id: str,
		step_number: int,
		result: ExecutionResponse,
		duration_ms: Optional[float] = None,
	) -> StepContext:
		"""Attach a result to a recorded step and rebuild the ordered results list"""
		self._require(workflow_id)
		step = self._find_step(workflow_id, step_number)
		if step is None:
			raise KeyError(f"Step {step_number} was never recorded for workflow {workflow_id}")

		step.result = result
		if duration_ms is None:
			duration_ms = (datetime.now() - step.start_time).total_seconds() * 1000
		step.duration_ms = duration_ms

		results = [s.result for s in self._history[workflow_id] if s.result is not None]
		self._states[workflow_id] = self._states[workflow_id].model_copy(update={'results': results})

		await self._persist_history(workflow_id)
		await self._persist_state(workflow_id)
		return step

	async def set_context(self, workflow_id: str, key: str, value: Any) -> None:
		self._require(workflow_id)
		self._contexts[workflow_id][key] = value
		state = self._states[workflow_id]
		self._states[workflow_id] = state.model_copy(update={'context': copy.deepcopy(self._contexts[workflow_id])})
		await self._persist_context(workflow_id)
		await self._persist_state(workflow_id)

	async def snapshot(self, workflow_id: str, reason: str = "manual") -> StateSnapshot:
		"""Copy state and context into the bounded snapshot history"""
		state = self._require(workflow_id)
		snapshot = StateSnapshot(
			state=state.model_copy(deep=True),
			context=copy.deepcopy(self._contexts[workflow_id]),
			reason=reason,
		)
		# deque(maxlen) drops the oldest entry
		self._snapshots[workflow_id].append(snapshot)
		await self._persist_snapshots(workflow_id)
		return snapshot

	async def restore(self, workflow_id: str, snapshot_index: int = -1) -> bool:
		"""Replace live state and context with a stored snapshot; False when there is none"""
		snapshots = self._snapshots.get(workflow_id)
		if not snapshots:
			return False
		try:
			snapshot = snapshots[snapshot_index]
		except IndexError:
			return False

		self._states[workflow_id] = snapshot.state.model_copy(deep=True)
		self._contexts[workflow_id] = copy.deepcopy(snapshot.context)
		await self._persist_state(workflow_id)
		await self._persist_context(workflow_id)
		logger.info(f"Restored workflow {workflow_id} from snapshot taken at {snapshot.timestamp.isoformat()}")
		return True

	async def cleanup(self, workflow_id: str) -> None:
		"""Finalize and forget a workflow; unknown ids are ignored"""
		state = self._states.get(workflow_id)
		if state is None:
			return

		if state.status == WorkflowStatus.RUNNING:
			await self.update_state(workflow_id, {
				'status': WorkflowStatus.COMPLETED,
				'end_time': state.end_time or datetime.now(),
			})
		await self.snapshot(workflow_id, reason="cleanup")

		del self._states[workflow_id]
		self._contexts.pop(workflow_id, None)
		self._history.pop(workflow_id, None)
		self._snapshots.pop(workflow_id, None)

		for key in (state_key(workflow_id), context_key(workflow_id), history_key(workflow_id), snapshots_key(workflow_id)):
			await self._forget(key)
		logger.debug(f"Cleaned up workflow {workflow_id}")

	async def cleanup_all(self) -> None:
		for workflow_id in list(self._states):
			await self.cleanup(workflow_id)

	# Queries

	def has_workflow(self, workflow_id: str) -> bool:
		return workflow_id in self._states

	def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
		return self._states.get(workflow_id)

	def get_context(self, workflow_id: str) -> dict[str, Any]:
		return dict(self._contexts.get(workflow_id, {}))

	def get_context_value(self, workflow_id: str, key: str, default: Any = None) -> Any:
		return self._contexts.get(workflow_id, {}).get(key, default)

	def get_step_history(self, workflow_id: str) -> list[StepContext]:
		return list(self._history.get(workflow_id, []))

	def get_current_step(self, workflow_id: str) -> Optional[StepContext]:
		history = self._history.get(workflow_id)
		return history[-1] if history else None

	def get_snapshots(self, workflow_id: str) -> list[StateSnapshot]:
		return list(self._snapshots.get(workflow_id, []))

	def get_all_states(self) -> list[WorkflowState]:
		return list(self._states.values())

	def get_active_states(self) -> list[WorkflowState]:
		return [state for state in self._states.values() if not state.is_terminal]

	def search_states(
		self,
		status: Optional[WorkflowStatus] = None,
		started_after: Optional[datetime] = None,
		started_before: Optional[datetime] = None,
		has_errors: Optional[bool] = None,
		name_contains: Optional[str] = None,
	) -> list[WorkflowState]:
		states = list(self._states.values())

		if status is not None:
			states = [s for s in states if s.status == status]
		if started_after is not None:
			states = [s for s in states if s.start_time >= started_after]
		if started_before is not None:
			states = [s for s in states if s.start_time <= started_before]
		if has_errors is not None:
			states = [s for s in states if self._has_errors(s) == has_errors]
		if name_contains:
			needle = name_contains.lower()
			states = [s for s in states if s.name and needle in s.name.lower()]

		return states

	def _has_errors(self, state: WorkflowState) -> bool:
		return bool(state.error) or any(not result.success for result in state.results)

	def get_statistics(self, workflow_id: str) -> WorkflowStatistics:
		state = self._require(workflow_id)
		history = self._history[workflow_id]

		completed = sum(1 for s in history if s.result is not None and s.result.success)
		failed = sum(1 for s in history if s.result is not None and not s.result.success)
		skipped = sum(1 for s in history if s.skipped)
		durations = [s.duration_ms for s in history if s.duration_ms is not None]
		attempted = completed + failed

		return WorkflowStatistics(
			workflow_id=workflow_id,
			status=state.status,
			duration_ms=state.duration_ms,
			total_steps=state.total_steps,
			completed_steps=completed,
			failed_steps=failed,
			skipped_steps=skipped,
			success_rate=completed / attempted if attempted else 0.0,
			average_step_duration_ms=sum(durations) / len(durations) if durations else 0.0,
			snapshot_count=len(self._snapshots[workflow_id]),
		)

	def get_memory_usage(self) -> dict[str, int]:
		return {
			'workflows': len(self._states),
			'contexts': len(self._contexts),
			'step_history_entries': sum(len(h) for h in self._history.values()),
			'snapshots': sum(len(s) for s in self._snapshots.values()),
		}

	# Settings

	def set_persistence_enabled(self, enabled: bool) -> None:
		self.persistence_enabled = enabled

	def set_max_snapshots(self, max_snapshots: int) -> None:
		"""Change the cap; existing histories keep their newest entries"""
		if max_snapshots < 1:
			raise ValueError("max_snapshots must be at least 1")
		self.max_snapshots = max_snapshots
		for workflow_id, snapshots in self._snapshots.items():
			self._snapshots[workflow_id] = deque(snapshots, maxlen=max_snapshots)

	# Export / import

	async def export_workflow(self, workflow_id: str) -> dict[str, Any]:
		"""JSON-compatible bundle of state, context, history and snapshots"""
		state = self._require(workflow_id)
		export = WorkflowExport(
			workflow_id=workflow_id,
			state=state,
			context=self._contexts[workflow_id],
			step_history=self._history[workflow_id],
			snapshots=list(self._snapshots[workflow_id]),
		)
		return export.model_dump(mode='json')

	async def import_workflow(self, data: Union[dict[str, Any], str]) -> str:
		"""Load an exported bundle under a fresh id and return that id"""
		if isinstance(data, str):
			data = json.loads(data)
		export = WorkflowExport.model_validate(data)
		new_id = uuid7str()

		self._states[new_id] = export.state.model_copy(update={'id': new_id})
		self._contexts[new_id] = dict(export.context)
		self._history[new_id] = list(export.step_history)
		self._snapshots[new_id] = deque(
			(
				snapshot.model_copy(update={'state': snapshot.state.model_copy(update={'id': new_id})})
				for snapshot in export.snapshots
			),
			maxlen=self.max_snapshots,
		)

		await self._persist_state(new_id)
		await self._persist_context(new_id)
		await self._persist_history(new_id)
		await self._persist_snapshots(new_id)
		logger.info(f"Imported workflow {export.workflow_id} as {new_id}")
		return new_id

	async def load(self, workflow_id: str) -> Optional[WorkflowState]:
		"""Re-hydrate a workflow from the store into memory"""
		if self.store is None:
			return None
		try:
			raw_state = await self.store.get(state_key(workflow_id))
			if raw_state is None:
				return None
			raw_context = await self.store.get(context_key(workflow_id)) or {}
			raw_history = await self.store.get(history_key(workflow_id)) or []
			raw_snapshots = await self.store.get(snapshots_key(workflow_id)) or []
		except Exception as e:
			logger.warning(f"Failed to load workflow {workflow_id} from store: {e}")
			return None

		state = WorkflowState.model_validate(raw_state)
		self._states[workflow_id] = state
		self._contexts[workflow_id] = dict(raw_context)
		self._history[workflow_id] = _history_adapter.validate_python(raw_history)
		self._snapshots[workflow_id] = deque(
			_snapshots_adapter.validate_python(raw_snapshots), maxlen=self.max_snapshots
		)
		return state

	# Persistence

	def _require(self, workflow_id: str) -> WorkflowState:
		state = self._states.get(workflow_id)
		if state is None:
			raise WorkflowNotFound(workflow_id)
		return state

	def _find_step(self, workflow_id: str, step_number: int) -> Optional[StepContext]:
		for step in self._history.get(workflow_id, []):
			if step.step_number == step_number:
				return step
		return None

	async def _write(self, key: str, build: Callable[[], Any]) -> None:
		if not self.persistence_enabled or self.store is None:
			return
		try:
			await self.store.set(key, build())
		except Exception as e:
			logger.warning(f"Failed to persist {key}: {e}")

	async def _forget(self, key: str) -> None:
		if not self.persistence_enabled or self.store is None:
			return
		try:
			await self.store.delete(key)
		except Exception as e:
			logger.warning(f"Failed to delete {key}: {e}")

	async def _persist_state(self, workflow_id: str) -> None:
		await self._write(state_key(workflow_id), lambda: self._states[workflow_id].model_dump(mode='json'))

	async def _persist_context(self, workflow_id: str) -> None:
		await self._write(
			context_key(workflow_id),
			lambda: _context_adapter.dump_python(self._contexts[workflow_id], mode='json'),
		)

	async def _persist_history(self, workflow_id: str) -> None:
		await self._write(
			history_key(workflow_id),
			lambda: _history_adapter.dump_python(self._history[workflow_id], mode='json'),
		)

	async def _persist_snapshots(self, workflow_id: str) -> None:
		await self._write(
			snapshots_key(workflow_id),
			lambda: _snapshots_adapter.dump_python(list(self._snapshots[workflow_id]), mode='json'),
		)
