"""Tests for workflow state tracking, snapshots and persistence"""

import json
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from browser_flow.core.commands import ClickCommand, ExecutionResponse, NavigateCommand
from browser_flow.core.errors import WorkflowNotFound
from browser_flow.core.state import (
	InMemoryStateStore, JsonFileStateStore, StateTracker, WorkflowStatus,
)
from browser_flow.core.state.service import context_key, history_key, snapshots_key, state_key


class BrokenStore(InMemoryStateStore):
	"""Store whose writes always fail"""

	async def set(self, key, value):
		raise OSError("disk full")


async def _run_two_steps(tracker, workflow_id):
	navigate = NavigateCommand(url="https://example.com")
	click = ClickCommand(selector="#go")
	await tracker.record_step(workflow_id, 1, navigate)
	await tracker.record_step_result(workflow_id, 1, ExecutionResponse.ok(navigate.id, {'title': 'Example'}), 12.0)
	await tracker.record_step(workflow_id, 2, click)
	await tracker.record_step_result(workflow_id, 2, ExecutionResponse.fail(click.id, "STEP_EXECUTION_FAILED", "nope"), 8.0)


class TestStateLifecycle:
	"""Test initialize, update and cleanup"""

	@pytest.mark.asyncio
	async def test_initialize(self, tracker):
		state = await tracker.initialize("wf-1", {'user': 'alice'}, total_steps=3, name="login")

		assert state.status == WorkflowStatus.RUNNING
		assert state.current_step == 0
		assert state.context == {'user': 'alice'}
		assert len(tracker.get_snapshots("wf-1")) == 1

	@pytest.mark.asyncio
	async def test_update_snapshots_on_step_change(self, tracker):
		await tracker.initialize("wf-1", total_steps=3)

		await tracker.update_state("wf-1", {'current_step': 1})
		await tracker.update_state("wf-1", {'paused': True})

		assert tracker.get_state("wf-1").current_step == 1
		assert tracker.get_state("wf-1").paused
		# initialize + step change; the paused flag alone does not snapshot
		assert len(tracker.get_snapshots("wf-1")) == 2

	@pytest.mark.asyncio
	async def test_update_rejects_broken_invariants(self, tracker):
		await tracker.initialize("wf-1", total_steps=2)

		with pytest.raises(ValidationError):
			await tracker.update_state("wf-1", {'current_step': 3})
		with pytest.raises(ValidationError):
			await tracker.update_state("wf-1", {'status': WorkflowStatus.COMPLETED})

		assert tracker.get_state("wf-1").status == WorkflowStatus.RUNNING

	@pytest.mark.asyncio
	async def test_unknown_workflow(self, tracker):
		with pytest.raises(WorkflowNotFound):
			await tracker.update_state("missing", {'current_step': 1})
		with pytest.raises(KeyError):
			await tracker.set_context("missing", "k", "v")

	@pytest.mark.asyncio
	async def test_cleanup_completes_running_workflow(self, tracker, store):
		await tracker.initialize("wf-1", total_steps=1)
		assert await store.get(state_key("wf-1")) is not None

		await tracker.cleanup("wf-1")

		assert not tracker.has_workflow("wf-1")
		for key in (state_key("wf-1"), context_key("wf-1"), history_key("wf-1"), snapshots_key("wf-1")):
			assert await store.get(key) is None

	@pytest.mark.asyncio
	async def test_cleanup_unknown_is_noop(self, tracker):
		await tracker.cleanup("missing")

	@pytest.mark.asyncio
	async def test_cleanup_all(self, tracker):
		await tracker.initialize("a")
		await tracker.initialize("b")

		await tracker.cleanup_all()

		assert tracker.get_all_states() == []


class TestSteps:
	"""Test step history and results"""

	@pytest.mark.asyncio
	async def test_results_follow_step_order(self, tracker):
		await tracker.initialize("wf-1", total_steps=2)

		await _run_two_steps(tracker, "wf-1")

		state = tracker.get_state("wf-1")
		assert [r.success for r in state.results] == [True, False]
		assert [s.step_number for s in tracker.get_step_history("wf-1")] == [1, 2]
		assert tracker.get_current_step("wf-1").step_number == 2

	@pytest.mark.asyncio
	async def test_recording_same_step_twice(self, tracker):
		await tracker.initialize("wf-1", total_steps=1)
		command = ClickCommand(selector="#a")

		first = await tracker.record_step("wf-1", 1, command)
		second = await tracker.record_step("wf-1", 1, ClickCommand(selector="#b"))

		assert first is second
		assert len(tracker.get_step_history("wf-1")) == 1

	@pytest.mark.asyncio
	async def test_result_for_unrecorded_step(self, tracker):
		await tracker.initialize("wf-1", total_steps=1)

		with pytest.raises(KeyError):
			await tracker.record_step_result("wf-1", 1, ExecutionResponse.ok("x"))

	@pytest.mark.asyncio
	async def test_replacing_a_result(self, tracker):
		"""A recovered step overwrites its failed result in place"""
		await tracker.initialize("wf-1", total_steps=2)
		await _run_two_steps(tracker, "wf-1")

		await tracker.record_step_result("wf-1", 2, ExecutionResponse.ok("retry", {'ok': True}))

		assert [r.success for r in tracker.get_state("wf-1").results] == [True, True]

	@pytest.mark.asyncio
	async def test_set_context(self, tracker):
		await tracker.initialize("wf-1", {'a': 1})

		await tracker.set_context("wf-1", "b", 2)

		assert tracker.get_context("wf-1") == {'a': 1, 'b': 2}
		assert tracker.get_state("wf-1").context == {'a': 1, 'b': 2}
		assert tracker.get_context_value("wf-1", "missing", "default") == "default"

	@pytest.mark.asyncio
	async def test_statistics(self, tracker):
		await tracker.initialize("wf-1", total_steps=3)
		await _run_two_steps(tracker, "wf-1")
		await tracker.record_step("wf-1", 3, ClickCommand(selector="#skip"), skipped=True)

		stats = tracker.get_statistics("wf-1")

		assert stats.completed_steps == 1
		assert stats.failed_steps == 1
		assert stats.skipped_steps == 1
		assert stats.success_rate == 0.5
		assert stats.average_step_duration_ms == 10.0


class TestSnapshots:
	"""Test the bounded snapshot history"""

	@pytest.mark.asyncio
	async def test_snapshot_cap_evicts_oldest(self):
		tracker = StateTracker(max_snapshots=3)
		await tracker.initialize("wf-1", total_steps=10)

		for step in range(1, 6):
			await tracker.update_state("wf-1", {'current_step': step})

		snapshots = tracker.get_snapshots("wf-1")
		assert len(snapshots) == 3
		assert [s.state.current_step for s in snapshots] == [3, 4, 5]

	@pytest.mark.asyncio
	async def test_default_cap_is_ten(self, tracker):
		await tracker.initialize("wf-1")

		for _ in range(25):
			await tracker.snapshot("wf-1")

		assert len(tracker.get_snapshots("wf-1")) == 10

	@pytest.mark.asyncio
	async def test_restore(self, tracker):
		await tracker.initialize("wf-1", {'a': 1}, total_steps=3)
		await tracker.update_state("wf-1", {'current_step': 1})
		await tracker.set_context("wf-1", "a", 99)

		assert await tracker.restore("wf-1", 0) is True

		assert tracker.get_state("wf-1").current_step == 0
		assert tracker.get_context("wf-1") == {'a': 1}

	@pytest.mark.asyncio
	async def test_restore_without_snapshots(self, tracker):
		assert await tracker.restore("missing") is False

	@pytest.mark.asyncio
	async def test_lower_cap_keeps_newest(self, tracker):
		await tracker.initialize("wf-1", total_steps=5)
		for step in range(1, 6):
			await tracker.update_state("wf-1", {'current_step': step})

		tracker.set_max_snapshots(2)

		assert [s.state.current_step for s in tracker.get_snapshots("wf-1")] == [4, 5]
		with pytest.raises(ValueError):
			tracker.set_max_snapshots(0)


class TestExportImport:
	"""Test workflow export and import"""

	@pytest.mark.asyncio
	async def test_round_trip_assigns_new_id(self, tracker):
		await tracker.initialize("wf-1", {'query': 'cats'}, total_steps=2, name="search")
		await _run_two_steps(tracker, "wf-1")

		exported = await tracker.export_workflow("wf-1")
		new_id = await tracker.import_workflow(exported)

		assert new_id != "wf-1"
		assert tracker.get_state(new_id).id == new_id
		assert tracker.get_context(new_id) == tracker.get_context("wf-1")
		assert tracker.get_step_history(new_id) == tracker.get_step_history("wf-1")
		assert all(s.state.id == new_id for s in tracker.get_snapshots(new_id))

	@pytest.mark.asyncio
	async def test_import_from_json_string(self, tracker):
		await tracker.initialize("wf-1", {'n': 1}, total_steps=2)
		await _run_two_steps(tracker, "wf-1")

		blob = json.dumps(await tracker.export_workflow("wf-1"))
		new_id = await tracker.import_workflow(blob)

		history = tracker.get_step_history(new_id)
		assert [s.command.type for s in history] == ['navigate', 'click']
		assert history[0].result.data == {'title': 'Example'}


class TestQueries:
	"""Test searching tracked workflows"""

	@pytest.mark.asyncio
	async def test_search_states(self, tracker):
		await tracker.initialize("a", name="Login flow", total_steps=2)
		await tracker.initialize("b", name="Search flow", total_steps=2)
		await _run_two_steps(tracker, "b")
		await tracker.update_state("a", {'status': WorkflowStatus.COMPLETED, 'end_time': datetime.now()})

		assert [s.id for s in tracker.search_states(status=WorkflowStatus.RUNNING)] == ["b"]
		assert [s.id for s in tracker.search_states(has_errors=True)] == ["b"]
		assert [s.id for s in tracker.search_states(name_contains="login")] == ["a"]
		assert tracker.search_states(started_after=datetime.now() + timedelta(hours=1)) == []
		assert [s.id for s in tracker.get_active_states()] == ["b"]

	@pytest.mark.asyncio
	async def test_memory_usage(self, tracker):
		await tracker.initialize("a", total_steps=2)
		await _run_two_steps(tracker, "a")

		usage = tracker.get_memory_usage()

		assert usage['workflows'] == 1
		assert usage['step_history_entries'] == 2


class TestPersistence:
	"""Test the durable store collaborator"""

	@pytest.mark.asyncio
	async def test_store_failures_do_not_abort(self):
		tracker = StateTracker(store=BrokenStore())

		state = await tracker.initialize("wf-1", total_steps=1)
		await tracker.set_context("wf-1", "k", "v")

		assert state.status == WorkflowStatus.RUNNING
		assert tracker.get_context_value("wf-1", "k") == "v"

	@pytest.mark.asyncio
	async def test_persistence_can_be_disabled(self, store):
		tracker = StateTracker(store=store, persistence_enabled=False)

		await tracker.initialize("wf-1")

		assert len(store) == 0

	@pytest.mark.asyncio
	async def test_load_from_json_files(self, tmp_path):
		store = JsonFileStateStore(tmp_path)
		writer = StateTracker(store=store)
		await writer.initialize("wf-1", {'query': 'cats'}, total_steps=2, name="search")
		await _run_two_steps(writer, "wf-1")

		reader = StateTracker(store=JsonFileStateStore(tmp_path))
		state = await reader.load("wf-1")

		assert state is not None
		assert state.name == "search"
		assert reader.get_context("wf-1") == {'query': 'cats'}
		assert len(reader.get_step_history("wf-1")) == 2
		assert "workflow_state_wf-1" in await store.keys("workflow_state_")

	@pytest.mark.asyncio
	async def test_load_missing(self, tmp_path):
		tracker = StateTracker(store=JsonFileStateStore(tmp_path))
		assert await tracker.load("missing") is None
