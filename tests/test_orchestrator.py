"""End-to-end tests for the orchestrator run loop."""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from agent_orchestrator.operations.files import create_default_registry
from agent_orchestrator.operations.registry import ToolResult
from agent_orchestrator.orchestrator.engine import RunAlreadyActiveError
from agent_orchestrator.tasks.models import (
	FailureReason,
	MessageRole,
	MessageVariant,
	RunState,
	SubtaskStatus,
	TaskStatus,
)
from agent_orchestrator.tasks.store import TaskStore

from .helpers import (
	FakeOracle,
	RecordingTools,
	make_orchestrator,
	make_project,
	overview_json,
	subtasks_json,
)


@pytest_asyncio.fixture
async def store(tmp_path: Path):
	s = TaskStore(str(tmp_path / "tasks.db"))
	await s.init()
	yield s
	await s.close()


@pytest.fixture
def project(tmp_path: Path) -> Path:
	root = tmp_path / "project"
	root.mkdir()
	return make_project(root)


TWO_WRITES = subtasks_json(
	("write_file", {"path": "a.txt", "content": "a"}, "Write a"),
	("write_file", {"path": "b.txt", "content": "b"}, "Write b"),
)


class TestHappyPath:
	"""Runs where every subtask succeeds."""

	@pytest.mark.asyncio
	async def test_two_tasks_two_subtasks_each(self, store, project):
		"""Four operation calls in order, both tasks done, run successful."""
		oracle = FakeOracle(
			overview=overview_json("Create the page", "Link the page"),
			default_subtask_reply=TWO_WRITES,
		)
		tools = RecordingTools()
		tools.add("write_file")
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		result = await orchestrator.start_run("Add a testimonials page", chat_id="chat-1")

		assert result.success is True
		assert result.state == RunState.COMPLETED
		assert result.total_tasks == 2
		assert result.successful_tasks == 2
		assert result.failed_tasks == 0
		assert result.summary == "All overview tasks completed successfully"
		assert [p for _, p in tools.calls] == [
			{"path": "a.txt", "content": "a"},
			{"path": "b.txt", "content": "b"},
		] * 2

		tasks = await store.get_overview_tasks("chat-1", result.run_id)
		assert [t.ordinal for t in tasks] == [1, 2]
		assert all(t.status == TaskStatus.DONE for t in tasks)
		assert all(s.status == SubtaskStatus.DONE for t in tasks for s in t.subtasks)
		assert tasks[0].subtasks[0].result == {"attempts": 1, "output": "write_file ok"}

	@pytest.mark.asyncio
	async def test_messages_recorded(self, store, project):
		"""User request, tool steps, one live snapshot and a summary land in the chat."""
		oracle = FakeOracle(overview=overview_json("Only task"), default_subtask_reply=TWO_WRITES)
		tools = RecordingTools()
		tools.add("write_file")
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		result = await orchestrator.start_run("Do the thing", chat_id="chat-1")

		messages = await store.list_messages("chat-1")
		assert messages[0].role == MessageRole.USER
		assert messages[0].content == "Do the thing"

		steps = await store.list_messages("chat-1", MessageVariant.TOOL_STEP)
		assert len(steps) == 2
		assert steps[0].payload["operation"] == "write_file"
		assert steps[0].payload["success"] is True
		assert steps[0].payload["task_ordinal"] == 1
		assert steps[0].run_id == result.run_id

		snapshots = await store.list_messages("chat-1", MessageVariant.TASK_SNAPSHOT)
		assert len(snapshots) == 1
		assert snapshots[0].payload["state"] == RunState.COMPLETED.value
		assert snapshots[0].payload["type"] == "run_finished"
		assert snapshots[0].payload["progress"]["percent"] == 100

		summary = [m for m in messages if m.variant == MessageVariant.TEXT and m.role == MessageRole.AGENT]
		assert summary[-1].payload["success"] is True

	@pytest.mark.asyncio
	async def test_ordinals_continue_across_runs(self, store, project):
		oracle = FakeOracle(overview=overview_json("One", "Two"), default_subtask_reply=TWO_WRITES)
		tools = RecordingTools()
		tools.add("write_file")
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		await orchestrator.start_run("first", chat_id="chat-1")
		second = await orchestrator.start_run("second", chat_id="chat-1")

		assert [t.ordinal for t in second.tasks] == [3, 4]

	@pytest.mark.asyncio
	async def test_chat_created_when_missing(self, store, project):
		oracle = FakeOracle(overview=overview_json("One"), default_subtask_reply=TWO_WRITES)
		tools = RecordingTools()
		tools.add("write_file")
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		result = await orchestrator.start_run("Build a gallery\nwith captions")

		chat = await store.get_chat(result.chat_id)
		assert chat is not None
		assert chat.name == "Build a gallery"

	@pytest.mark.asyncio
	async def test_observers_receive_events(self, store, project):
		"""Observers see every state in order, ending with run_finished."""
		oracle = FakeOracle(overview=overview_json("One"), default_subtask_reply=TWO_WRITES)
		tools = RecordingTools()
		tools.add("write_file")
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)
		events = []
		orchestrator.on_progress("chat-1", events.append)

		await orchestrator.start_run("go", chat_id="chat-1")
		await orchestrator.hub.drain()

		assert events[0].state == RunState.PLANNING
		assert all(e.type == "progress" for e in events[:-1])
		assert events[-1].type == "run_finished"
		assert events[-1].state == RunState.COMPLETED
		assert orchestrator.hub.subscriber_count("chat-1") == 0


class TestFallback:
	"""Subtask planning failures."""

	@pytest.mark.asyncio
	async def test_malformed_subtasks_use_fallback_read(self, store, project):
		"""Task 1 gets one read-only fallback; task 2 is planned normally."""
		oracle = FakeOracle(
			overview=overview_json("Build the contact form component", "Link it"),
			subtask_replies=[
				"I'm not sure what to do here.",
				subtasks_json(("list_files", {"path": "app"}, "Look at app")),
			],
		)
		registry = create_default_registry(project)
		orchestrator = make_orchestrator(store, oracle, registry, project)

		result = await orchestrator.start_run("Add a contact form", chat_id="chat-1")

		assert result.success is True
		first, second = result.tasks
		assert len(first.subtasks) == 1
		fallback = first.subtasks[0]
		assert fallback.fallback is True
		assert fallback.operation == "read_file"
		assert fallback.parameters == {"path": "components/ContactForm.tsx"}
		assert fallback.status == SubtaskStatus.DONE
		assert "ContactForm" in fallback.result["output"]

		assert second.subtasks[0].operation == "list_files"
		assert second.subtasks[0].fallback is False

		steps = await store.list_messages("chat-1", MessageVariant.TOOL_STEP)
		assert steps[0].payload["fallback"] is True


class TestRetries:
	"""Operation failures during a run."""

	@pytest.mark.asyncio
	async def test_transient_failures_recover(self, store, project):
		"""write_file fails twice then succeeds: one subtask, three attempts."""
		oracle = FakeOracle(
			overview=overview_json("Write"),
			subtask_replies=[subtasks_json(("write_file", {"path": "a", "content": "x"}, "Write a"))],
		)
		tools = RecordingTools()
		tools.add("write_file", [
			ToolResult.fail("disk busy"),
			ToolResult.fail("disk busy"),
			ToolResult.ok("written"),
		])
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		result = await orchestrator.start_run("write", chat_id="chat-1")

		assert result.success is True
		subtask = result.tasks[0].subtasks[0]
		assert subtask.status == SubtaskStatus.DONE
		assert subtask.result["attempts"] == 3
		assert len(tools.calls) == 3

	@pytest.mark.asyncio
	async def test_failed_subtask_fails_task_but_run_continues(self, store, project):
		"""A permanent failure fails its task; later subtasks and tasks still run."""
		oracle = FakeOracle(
			overview=overview_json("First", "Second"),
			subtask_replies=[
				subtasks_json(
					("read_file", {"path": "missing.txt"}, "Read missing"),
					("write_file", {"path": "a", "content": "x"}, "Write a"),
				),
				subtasks_json(("write_file", {"path": "b", "content": "y"}, "Write b")),
			],
		)
		tools = RecordingTools()
		tools.add("read_file", [ToolResult.fail("File not found: missing.txt")])
		tools.add("write_file")
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		result = await orchestrator.start_run("go", chat_id="chat-1")

		assert result.success is False
		assert result.state == RunState.COMPLETED_WITH_ERRORS
		assert result.successful_tasks == 1
		assert result.failed_tasks == 1
		assert result.summary == "1/2 overview tasks completed successfully"
		first, second = result.tasks
		assert first.status == TaskStatus.FAILED
		assert first.failure_reason == FailureReason.SUBTASK_FAILED
		assert first.subtasks[0].result["attempts"] == 1
		assert first.subtasks[0].result["reason"] == "error"
		assert first.subtasks[1].status == SubtaskStatus.DONE
		assert second.status == TaskStatus.DONE
		assert tools.names_called() == ["read_file", "write_file", "write_file"]

	@pytest.mark.asyncio
	async def test_unknown_operation_fails_subtask(self, store, project):
		oracle = FakeOracle(
			overview=overview_json("Only"),
			subtask_replies=[subtasks_json(("teleport", {}, "Go elsewhere"))],
		)
		tools = RecordingTools()
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		result = await orchestrator.start_run("go", chat_id="chat-1")

		subtask = result.tasks[0].subtasks[0]
		assert subtask.status == SubtaskStatus.FAILED
		assert subtask.result["attempts"] == 0
		assert "Unknown tool" in subtask.result["error"]
		assert result.success is False


class TestStop:
	"""Cooperative cancellation."""

	@pytest.mark.asyncio
	async def test_stop_after_first_task(self, store, project):
		"""Stop during task 1's last subtask: task 1 done, task 2 stopped, no calls for it."""
		oracle = FakeOracle(
			overview=overview_json("First", "Second"),
			default_subtask_reply=subtasks_json(("write_file", {"path": "a"}, "Write a")),
		)
		tools = RecordingTools()
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		async def write_file(**params):
			tools.calls.append(("write_file", params))
			orchestrator.request_stop("chat-1")
			return ToolResult.ok("written")

		tools.registry.register("write_file", write_file)

		result = await orchestrator.start_run("go", chat_id="chat-1")

		assert len(tools.calls) == 1
		assert result.stopped is True
		assert result.success is False
		assert result.state == RunState.COMPLETED_WITH_ERRORS
		assert result.summary == "1/2 overview tasks completed successfully (stopped)"
		first, second = result.tasks
		assert first.status == TaskStatus.DONE
		assert second.status == TaskStatus.FAILED
		assert second.failure_reason == FailureReason.STOPPED
		assert second.subtasks == []

	@pytest.mark.asyncio
	async def test_stop_during_final_subtask_completes(self, store, project):
		"""A stop that cuts nothing short leaves the run completed."""
		oracle = FakeOracle(
			overview=overview_json("Only"),
			default_subtask_reply=subtasks_json(("write_file", {"path": "a"}, "Write a")),
		)
		tools = RecordingTools()
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		async def write_file(**params):
			tools.calls.append(("write_file", params))
			orchestrator.request_stop("chat-1")
			return ToolResult.ok("written")

		tools.registry.register("write_file", write_file)

		result = await orchestrator.start_run("go", chat_id="chat-1")

		assert len(tools.calls) == 1
		assert result.state == RunState.COMPLETED
		assert result.success is True
		assert result.stopped is False
		assert result.summary == "All overview tasks completed successfully"

	@pytest.mark.asyncio
	async def test_stop_mid_task(self, store, project):
		"""Remaining subtasks of the current task are failed as stopped."""
		oracle = FakeOracle(
			overview=overview_json("Only"),
			subtask_replies=[subtasks_json(
				("write_file", {"path": "a"}, "Write a"),
				("write_file", {"path": "b"}, "Write b"),
				("write_file", {"path": "c"}, "Write c"),
			)],
		)
		tools = RecordingTools()
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		def write_file(**params):
			tools.calls.append(("write_file", params))
			orchestrator.request_stop("chat-1")
			return ToolResult.ok("written")

		tools.registry.register("write_file", write_file)

		result = await orchestrator.start_run("go", chat_id="chat-1")

		task = result.tasks[0]
		assert task.status == TaskStatus.FAILED
		assert task.failure_reason == FailureReason.STOPPED
		assert [s.status for s in task.subtasks] == [
			SubtaskStatus.DONE, SubtaskStatus.FAILED, SubtaskStatus.FAILED,
		]
		assert task.subtasks[1].result == {"reason": "stopped", "attempts": 0}
		assert len(tools.calls) == 1

	@pytest.mark.asyncio
	async def test_stop_before_execution_cancels(self, store, project):
		"""A stop during planning executes nothing and ends cancelled."""
		tools = RecordingTools()
		tools.add("write_file")
		holder = {}

		def overview(prompt):
			holder["orchestrator"].request_stop("chat-1")
			return overview_json("One", "Two")

		oracle = FakeOracle(overview=overview, default_subtask_reply=TWO_WRITES)
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)
		holder["orchestrator"] = orchestrator

		result = await orchestrator.start_run("go", chat_id="chat-1")

		assert result.state == RunState.CANCELLED
		assert result.success is False
		assert tools.calls == []
		assert all(t.failure_reason == FailureReason.STOPPED for t in result.tasks)

	@pytest.mark.asyncio
	async def test_request_stop_without_run(self, store, project):
		orchestrator = make_orchestrator(store, FakeOracle(overview="[]"), RecordingTools().registry, project)
		assert orchestrator.request_stop("nobody") is False


class TestRunLifecycle:
	"""Planning failures and concurrency."""

	@pytest.mark.asyncio
	async def test_overview_planning_failure(self, store, project):
		"""Unusable overview output ends the run as failed with no tasks."""
		tools = RecordingTools()
		orchestrator = make_orchestrator(store, FakeOracle(overview="no plan"), tools.registry, project)

		result = await orchestrator.start_run("go", chat_id="chat-1")

		assert result.state == RunState.FAILED
		assert result.success is False
		assert result.error
		assert await store.get_overview_tasks("chat-1") == []
		summary = (await store.list_messages("chat-1", MessageVariant.TEXT))[-1]
		assert summary.payload["reason"] == FailureReason.DECOMPOSITION_FAILED.value
		assert summary.payload["state"] == RunState.FAILED.value
		snapshot = await orchestrator.latest_snapshot("chat-1")
		assert snapshot["state"] == RunState.FAILED.value
		assert snapshot["type"] == "run_finished"
		assert not orchestrator.is_running("chat-1")

	@pytest.mark.asyncio
	async def test_second_run_for_active_chat_rejected(self, store, project):
		release = asyncio.Event()

		async def overview(prompt):
			await release.wait()
			return overview_json("One")

		class BlockingOracle(FakeOracle):
			async def generate(self, prompt):
				if prompt.startswith("# Plan Overview Tasks"):
					self.prompts.append(prompt)
					return await overview(prompt)
				return await super().generate(prompt)

		tools = RecordingTools()
		tools.add("write_file")
		oracle = BlockingOracle(overview="", default_subtask_reply=TWO_WRITES)
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		active = orchestrator.launch_run("first", chat_id="chat-1")
		assert orchestrator.is_running("chat-1")
		with pytest.raises(RunAlreadyActiveError):
			await orchestrator.start_run("second", chat_id="chat-1")

		release.set()
		await orchestrator.wait_background()

		assert not orchestrator.is_running("chat-1")
		tasks = await store.get_overview_tasks("chat-1")
		assert {t.run_id for t in tasks} == {active.run_id}
		assert all(t.status == TaskStatus.DONE for t in tasks)

	@pytest.mark.asyncio
	async def test_different_chats_run_concurrently(self, store, project):
		oracle = FakeOracle(overview=overview_json("One"), default_subtask_reply=TWO_WRITES)
		tools = RecordingTools()
		tools.add("write_file")
		orchestrator = make_orchestrator(store, oracle, tools.registry, project)

		one, two = await asyncio.gather(
			orchestrator.start_run("a", chat_id="chat-a"),
			orchestrator.start_run("b", chat_id="chat-b"),
		)

		assert one.success and two.success
		assert one.tasks[0].ordinal == 1
		assert two.tasks[0].ordinal == 1
