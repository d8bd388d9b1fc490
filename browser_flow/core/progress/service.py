"""Fire-and-forget progress fan-out to subscribers"""

import asyncio
import logging
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Iterable, Optional

from browser_flow.core.commands.views import Command

from .views import ProgressEvent, ProgressEventType, StepProgress, WorkflowProgress

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
	"""Async iterator over the events a subscriber asked for"""

	def __init__(
		self,
		reporter: 'ProgressReporter',
		maxsize: int,
		workflow_id: Optional[str] = None,
		event_types: Optional[Iterable[ProgressEventType]] = None,
	):
		self._reporter = reporter
		self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
		self.workflow_id = workflow_id
		self.event_types = frozenset(event_types) if event_types else None
		self.closed = False
		self.dropped = 0

	def matches(self, event: ProgressEvent) -> bool:
		if self.workflow_id is not None and event.workflow_id != self.workflow_id:
			return False
		if self.event_types is not None and event.type not in self.event_types:
			return False
		return True

	def deliver(self, event: ProgressEvent) -> bool:
		"""Queue without blocking; False when the event had to be dropped"""
		if self.closed:
			return False
		try:
			self._queue.put_nowait(event)
			return True
		except asyncio.QueueFull:
			self.dropped += 1
			return False

	def __aiter__(self) -> 'Subscription':
		return self

	async def __anext__(self) -> ProgressEvent:
		if self.closed and self._queue.empty():
			raise StopAsyncIteration
		item = await self._queue.get()
		if item is _CLOSED:
			raise StopAsyncIteration
		return item

	async def get(self, timeout: Optional[float] = None) -> ProgressEvent:
		"""Next event; raises asyncio.TimeoutError after timeout seconds"""
		if timeout is None:
			return await self.__anext__()
		return await asyncio.wait_for(self.__anext__(), timeout=timeout)

	def drain(self) -> list[ProgressEvent]:
		"""Everything queued right now, without waiting"""
		events = []
		while True:
			try:
				item = self._queue.get_nowait()
			except asyncio.QueueEmpty:
				break
			if item is not _CLOSED:
				events.append(item)
		return events

	def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		self._reporter._unsubscribe(self)
		try:
			self._queue.put_nowait(_CLOSED)
		except asyncio.QueueFull:
			pass


class ProgressReporter:
	"""Publishes typed progress events and keeps per-workflow summaries

	Every report method is synchronous and never waits on subscribers.
	"""

	def __init__(self, queue_size: int = 1000, history_size: int = 1000, throttle_ms: int = 0):
		self.queue_size = queue_size
		self.throttle_ms = throttle_ms
		self._subscriptions: list[Subscription] = []
		self._history: deque[ProgressEvent] = deque(maxlen=history_size)
		self._workflows: dict[str, WorkflowProgress] = {}
		self._steps: dict[str, dict[int, StepProgress]] = defaultdict(dict)
		self._last_emitted: dict[tuple[str, ProgressEventType], datetime] = {}
		self._event_counts: dict[ProgressEventType, int] = defaultdict(int)
		self._dropped = 0
		self._throttled = 0

	# Subscriptions

	def subscribe(
		self,
		workflow_id: Optional[str] = None,
		event_types: Optional[Iterable[ProgressEventType]] = None,
	) -> Subscription:
		subscription = Subscription(self, self.queue_size, workflow_id, event_types)
		self._subscriptions.append(subscription)
		return subscription

	def _unsubscribe(self, subscription: Subscription) -> None:
		if subscription in self._subscriptions:
			self._subscriptions.remove(subscription)

	@property
	def subscriber_count(self) -> int:
		return len(self._subscriptions)

	# Reports

	def report_workflow_queued(self, workflow_id: str, name: Optional[str] = None, position: int = 0) -> None:
		self._workflows[workflow_id] = WorkflowProgress(workflow_id=workflow_id, name=name, status="queued")
		self._publish(ProgressEvent(
			type=ProgressEventType.WORKFLOW_QUEUED,
			workflow_id=workflow_id,
			message=f"Workflow queued at position {position}",
			data={'position': position},
		))

	def report_workflow_start(self, workflow_id: str, name: Optional[str], total_steps: int) -> None:
		self._workflows[workflow_id] = WorkflowProgress(workflow_id=workflow_id, name=name, total_steps=total_steps)
		self._steps.pop(workflow_id, None)
		self._publish(ProgressEvent(
			type=ProgressEventType.WORKFLOW_START,
			workflow_id=workflow_id,
			total_steps=total_steps,
			message=f"Starting workflow {name or workflow_id} ({total_steps} steps)",
		))

	def report_step_start(self, workflow_id: str, step_number: int, command: Command, total_steps: Optional[int] = None) -> None:
		self._steps[workflow_id][step_number] = StepProgress(
			workflow_id=workflow_id,
			step_number=step_number,
			command_type=command.type,
			description=command.describe(),
		)
		progress = self._workflows.get(workflow_id)
		if progress:
			progress.current_step = step_number
		self._publish(ProgressEvent(
			type=ProgressEventType.STEP_START,
			workflow_id=workflow_id,
			step_number=step_number,
			total_steps=total_steps,
			command_type=command.type,
			message=f"Step {step_number}: {command.describe()}",
		))

	def report_step_complete(
		self,
		workflow_id: str,
		step_number: int,
		command: Command,
		duration_ms: Optional[float] = None,
		data: Any = None,
	) -> None:
		self._finish_step(workflow_id, step_number, "completed", duration_ms)
		progress = self._workflows.get(workflow_id)
		if progress:
			progress.completed_steps += 1
		self._publish(ProgressEvent(
			type=ProgressEventType.STEP_COMPLETE,
			workflow_id=workflow_id,
			step_number=step_number,
			command_type=command.type,
			duration_ms=duration_ms,
			message=f"Step {step_number} completed",
			data={'result': data} if isinstance(data, (str, int, float, bool)) else {},
		))

	def report_step_error(
		self,
		workflow_id: str,
		step_number: int,
		command: Command,
		error: str,
		error_code: Optional[str] = None,
		duration_ms: Optional[float] = None,
	) -> None:
		self._finish_step(workflow_id, step_number, "failed", duration_ms, error)
		progress = self._workflows.get(workflow_id)
		if progress:
			progress.failed_steps += 1
		self._publish(ProgressEvent(
			type=ProgressEventType.STEP_ERROR,
			workflow_id=workflow_id,
			step_number=step_number,
			command_type=command.type,
			error=error,
			error_code=error_code,
			duration_ms=duration_ms,
			message=f"Step {step_number} failed: {error}",
		))

	def report_step_skipped(self, workflow_id: str, step_number: int, command: Command, reason: str) -> None:
		self._steps[workflow_id][step_number] = StepProgress(
			workflow_id=workflow_id,
			step_number=step_number,
			command_type=command.type,
			description=command.describe(),
			status="skipped",
			end_time=datetime.now(),
		)
		progress = self._workflows.get(workflow_id)
		if progress:
			progress.skipped_steps += 1
		self._publish(ProgressEvent(
			type=ProgressEventType.STEP_SKIPPED,
			workflow_id=workflow_id,
			step_number=step_number,
			command_type=command.type,
			message=f"Step {step_number} skipped: {reason}",
		))

	def report_workflow_paused(self, workflow_id: str, step_number: int) -> None:
		self._set_status(workflow_id, "paused")
		self._publish(ProgressEvent(
			type=ProgressEventType.WORKFLOW_PAUSED,
			workflow_id=workflow_id,
			step_number=step_number,
			message=f"Paused after step {step_number}, waiting for resume",
		))

	def report_workflow_resumed(self, workflow_id: str) -> None:
		self._set_status(workflow_id, "running")
		self._publish(ProgressEvent(
			type=ProgressEventType.WORKFLOW_RESUMED,
			workflow_id=workflow_id,
			message="Workflow resumed",
		))

	def report_workflow_complete(self, workflow_id: str, duration_ms: Optional[float] = None) -> None:
		self._end_workflow(workflow_id, "completed")
		self._publish(ProgressEvent(
			type=ProgressEventType.WORKFLOW_COMPLETE,
			workflow_id=workflow_id,
			duration_ms=duration_ms,
			message="Workflow completed",
		))

	def report_workflow_error(self, workflow_id: str, error: str, error_code: Optional[str] = None) -> None:
		self._end_workflow(workflow_id, "failed", error)
		self._publish(ProgressEvent(
			type=ProgressEventType.WORKFLOW_ERROR,
			workflow_id=workflow_id,
			error=error,
			error_code=error_code,
			message=f"Workflow failed: {error}",
		))

	def report_workflow_cancelled(self, workflow_id: str) -> None:
		self._end_workflow(workflow_id, "cancelled")
		self._publish(ProgressEvent(
			type=ProgressEventType.WORKFLOW_CANCELLED,
			workflow_id=workflow_id,
			message="Workflow cancelled",
		))

	# Summaries

	def _set_status(self, workflow_id: str, status: str) -> None:
		progress = self._workflows.get(workflow_id)
		if progress:
			progress.status = status

	def _end_workflow(self, workflow_id: str, status: str, error: Optional[str] = None) -> None:
		progress = self._workflows.setdefault(workflow_id, WorkflowProgress(workflow_id=workflow_id))
		progress.status = status
		progress.end_time = datetime.now()
		progress.error = error

	def _finish_step(
		self,
		workflow_id: str,
		step_number: int,
		status: str,
		duration_ms: Optional[float],
		error: Optional[str] = None,
	) -> None:
		step = self._steps[workflow_id].get(step_number)
		if step is None:
			return
		step.status = status
		step.end_time = datetime.now()
		step.duration_ms = duration_ms if duration_ms is not None else (step.end_time - step.start_time).total_seconds() * 1000
		step.error = error

	def get_workflow_progress(self, workflow_id: str) -> Optional[WorkflowProgress]:
		return self._workflows.get(workflow_id)

	def get_step_progress(self, workflow_id: str, step_number: Optional[int] = None) -> list[StepProgress]:
		steps = self._steps.get(workflow_id, {})
		if step_number is not None:
			return [steps[step_number]] if step_number in steps else []
		return [steps[n] for n in sorted(steps)]

	def get_history(
		self,
		workflow_id: Optional[str] = None,
		event_types: Optional[Iterable[ProgressEventType]] = None,
		limit: Optional[int] = None,
	) -> list[ProgressEvent]:
		events = list(self._history)
		if workflow_id is not None:
			events = [e for e in events if e.workflow_id == workflow_id]
		if event_types:
			wanted = set(event_types)
			events = [e for e in events if e.type in wanted]
		if limit:
			events = events[-limit:]
		return events

	def clear_history(self, workflow_id: Optional[str] = None) -> None:
		if workflow_id is None:
			self._history.clear()
			self._workflows.clear()
			self._steps.clear()
			return
		self._history = deque((e for e in self._history if e.workflow_id != workflow_id), maxlen=self._history.maxlen)
		self._workflows.pop(workflow_id, None)
		self._steps.pop(workflow_id, None)

	def get_statistics(self) -> dict[str, Any]:
		statuses = defaultdict(int)
		for progress in self._workflows.values():
			statuses[progress.status] += 1
		return {
			'total_events': sum(self._event_counts.values()),
			'events_by_type': {t.value: n for t, n in self._event_counts.items()},
			'workflows_by_status': dict(statuses),
			'subscribers': len(self._subscriptions),
			'dropped_events': self._dropped,
			'throttled_events': self._throttled,
		}

	def export(self, workflow_id: str) -> dict[str, Any]:
		progress = self._workflows.get(workflow_id)
		return {
			'workflow_id': workflow_id,
			'progress': progress.model_dump(mode='json') if progress else None,
			'steps': [s.model_dump(mode='json') for s in self.get_step_progress(workflow_id)],
			'events': [e.model_dump(mode='json') for e in self.get_history(workflow_id)],
		}

	# Delivery

	def _throttled_out(self, event: ProgressEvent) -> bool:
		if self.throttle_ms <= 0 or event.is_terminal:
			return False
		key = (event.workflow_id, event.type)
		last = self._last_emitted.get(key)
		if last is not None and (event.timestamp - last).total_seconds() * 1000 < self.throttle_ms:
			return True
		self._last_emitted[key] = event.timestamp
		return False

	def _publish(self, event: ProgressEvent) -> None:
		if self._throttled_out(event):
			self._throttled += 1
			return

		self._history.append(event)
		self._event_counts[event.type] += 1
		logger.debug(f"[{event.workflow_id}] {event.type.value}: {event.message}")

		for subscription in list(self._subscriptions):
			if not subscription.matches(event):
				continue
			if not subscription.deliver(event):
				self._dropped += 1
				logger.warning(f"Progress subscriber queue full, dropped {event.type.value} for {event.workflow_id}")

		if event.is_terminal:
			self._last_emitted = {k: v for k, v in self._last_emitted.items() if k[0] != event.workflow_id}
