"""Tests for the subtask executor and its retry policy."""

import asyncio
import time

import pytest

from agent_orchestrator.operations.registry import ToolResult
from agent_orchestrator.orchestrator.executor import Executor, FailureKind, is_non_retryable
from agent_orchestrator.tasks.models import SubtaskSpec

from .helpers import RecordingTools


def spec(operation: str, **params) -> SubtaskSpec:
	return SubtaskSpec(operation=operation, parameters=params, explanation=f"run {operation}")


class SleepRecorder:
	def __init__(self):
		self.delays: list[float] = []

	async def __call__(self, delay: float) -> None:
		self.delays.append(delay)


class TestClassifier:
	"""Permanent failure detection."""

	@pytest.mark.parametrize("message", [
		"Unknown tool: frobnicate",
		"File not found: app/page.tsx",
		"PERMISSION DENIED: ../etc/passwd",
		"Invalid parameters for write_file",
		"Syntax error at line 3",
	])
	def test_permanent_markers(self, message):
		assert is_non_retryable(message)

	@pytest.mark.parametrize("message", ["Connection reset", "Timed out after 5s", "", None])
	def test_transient_messages(self, message):
		assert not is_non_retryable(message)


class TestExecutor:
	"""Bounded retries with backoff."""

	@pytest.mark.asyncio
	async def test_success_first_attempt(self):
		tools = RecordingTools()
		tools.add("read_file", [ToolResult.ok("contents")])
		sleep = SleepRecorder()
		executor = Executor(tools.registry, sleep=sleep)

		result = await executor.execute(spec("read_file", path="a.txt"))

		assert result.success is True
		assert result.output == "contents"
		assert result.attempts == 1
		assert sleep.delays == []
		assert tools.calls == [("read_file", {"path": "a.txt"})]

	@pytest.mark.asyncio
	async def test_transient_failures_then_success(self):
		"""Two transient failures then success: three attempts with backoff between."""
		tools = RecordingTools()
		tools.add("write_file", [
			ToolResult.fail("disk busy"),
			ConnectionError("socket closed"),
			ToolResult.ok("written"),
		])
		sleep = SleepRecorder()
		executor = Executor(tools.registry, backoff_base=1.0, backoff_max=8.0, sleep=sleep)

		result = await executor.execute(spec("write_file", path="a", content="x"))

		assert result.success is True
		assert result.attempts == 3
		assert sleep.delays == [1.0, 2.0]
		assert len(tools.calls) == 3

	@pytest.mark.asyncio
	async def test_transient_exhaustion(self):
		"""Attempts stop at max_attempts."""
		tools = RecordingTools()
		tools.add("write_file", [ToolResult.fail("busy")] * 10)
		sleep = SleepRecorder()
		executor = Executor(tools.registry, max_attempts=3, sleep=sleep)

		result = await executor.execute(spec("write_file"))

		assert result.success is False
		assert result.attempts == 3
		assert result.failure_kind == FailureKind.TRANSIENT
		assert result.error == "busy"
		assert len(tools.calls) == 3
		assert len(sleep.delays) == 2

	@pytest.mark.asyncio
	async def test_permanent_failure_not_retried(self):
		tools = RecordingTools()
		tools.add("read_file", [ToolResult.fail("File not found: x")])
		sleep = SleepRecorder()
		executor = Executor(tools.registry, sleep=sleep)

		result = await executor.execute(spec("read_file", path="x"))

		assert result.success is False
		assert result.attempts == 1
		assert result.failure_kind == FailureKind.PERMANENT
		assert len(tools.calls) == 1
		assert sleep.delays == []

	@pytest.mark.asyncio
	async def test_unknown_operation_zero_attempts(self):
		tools = RecordingTools()
		executor = Executor(tools.registry, sleep=SleepRecorder())

		result = await executor.execute(spec("teleport"))

		assert result.success is False
		assert result.attempts == 0
		assert result.failure_kind == FailureKind.UNKNOWN_OPERATION
		assert "Unknown tool" in result.error

	@pytest.mark.asyncio
	async def test_bad_parameters_are_permanent(self):
		"""Parameters that do not bind to the handler fail without retry."""
		tools = RecordingTools()

		def read_file(path: str) -> ToolResult:
			return ToolResult.ok(path)

		tools.registry.register("read_file", read_file)
		executor = Executor(tools.registry, sleep=SleepRecorder())

		result = await executor.execute(spec("read_file", filename="a"))

		assert result.success is False
		assert result.attempts == 1
		assert result.failure_kind == FailureKind.PERMANENT

	@pytest.mark.asyncio
	async def test_timeout_counts_as_transient(self):
		tools = RecordingTools()

		async def slow(**params):
			await asyncio.sleep(5)

		tools.registry.register("slow", slow)
		executor = Executor(tools.registry, max_attempts=2, tool_timeout=0.01, sleep=SleepRecorder())

		result = await executor.execute(spec("slow"))

		assert result.success is False
		assert result.attempts == 2
		assert result.failure_kind == FailureKind.TRANSIENT

	@pytest.mark.asyncio
	async def test_blocking_sync_handler_times_out(self):
		"""A sync handler runs off the event loop, so the tool timeout still fires."""
		tools = RecordingTools()

		def blocking(**params):
			time.sleep(0.5)
			return "late"

		tools.registry.register("blocking", blocking)
		executor = Executor(tools.registry, max_attempts=1, tool_timeout=0.05, sleep=SleepRecorder())

		result = await executor.execute(spec("blocking"))

		assert result.success is False
		assert result.failure_kind == FailureKind.TRANSIENT
		assert "Timed out" in result.error

	def test_backoff_is_capped(self):
		executor = Executor(RecordingTools().registry, backoff_base=1.0, backoff_max=3.0)
		assert [executor.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

	def test_payload_shapes(self):
		"""Success payloads carry output, failures carry error and kind."""
		from agent_orchestrator.orchestrator.executor import ExecutionResult

		ok = ExecutionResult(success=True, output="x", attempts=1).to_payload()
		assert ok == {"attempts": 1, "output": "x"}
		bad = ExecutionResult(
			success=False, error="nope", attempts=3, failure_kind=FailureKind.TRANSIENT
		).to_payload()
		assert bad == {"attempts": 3, "error": "nope", "failure_kind": "transient"}
