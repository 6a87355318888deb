"""
Orchestrator - Drive a run from user request to executed subtasks.

A run plans overview tasks, then for each task in ordinal order plans
subtasks and executes them one at a time. Every state change is
persisted and broadcast as a snapshot. Runs are cancelled cooperatively:
``request_stop()`` sets a flag that is checked before each task and
before each subtask, so an in-flight operation always completes.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..operations.registry import ToolRegistry
from ..tasks.models import (
	FailureReason,
	MessageRole,
	MessageVariant,
	OverviewTask,
	ProjectContext,
	RunResult,
	RunState,
	Subtask,
	SubtaskStatus,
	TaskStatus,
)
from ..tasks.store import TaskStore
from .analyzer import ProjectAnalyzer, analyze_project
from .decomposer import Decomposer, OracleMalformedOutput
from .executor import Executor
from .progress import Observer, ObserverHub, ProgressBroadcaster

logger = logging.getLogger(__name__)

MAX_PREVIEW_CHARS = 2000


class RunAlreadyActiveError(Exception):
	"""Raised when a chat already has a run in progress."""
	pass


@dataclass
class ActiveRun:
	"""Mutable state of one in-progress run."""
	run_id: str
	chat_id: str
	user_input: str
	stop_requested: bool = False
	executed: int = 0


def _chat_name(user_input: str) -> str:
	first_line = user_input.strip().splitlines()[0] if user_input.strip() else ""
	return first_line[:60] or "New chat"


def _preview(value: Any) -> Any:
	if isinstance(value, str) and len(value) > MAX_PREVIEW_CHARS:
		return value[:MAX_PREVIEW_CHARS] + "..."
	return value


class Orchestrator:
	"""
	Runs requests end to end against a task store, oracle-backed decomposer
	and tool registry.

	Usage:
		orchestrator = Orchestrator(store, decomposer, executor, registry, project_root)
		unsubscribe = orchestrator.on_progress(chat_id, print)
		result = await orchestrator.start_run("Add a contact form", chat_id=chat_id)
	"""

	def __init__(
		self,
		store: TaskStore,
		decomposer: Decomposer,
		executor: Executor,
		registry: ToolRegistry,
		project_root: Path,
		analyzer: Optional[ProjectAnalyzer] = None,
		hub: Optional[ObserverHub] = None,
	):
		self.store = store
		self.decomposer = decomposer
		self.executor = executor
		self.registry = registry
		self.project_root = Path(project_root)
		self.analyzer = analyzer or ProjectAnalyzer()
		self.hub = hub or ObserverHub()
		self.broadcaster = ProgressBroadcaster(store, self.hub)
		self._active: dict[str, ActiveRun] = {}
		self._background: set[asyncio.Task] = set()

	# ------------------------------------------------------------------
	# Hosting surface
	# ------------------------------------------------------------------

	def is_running(self, chat_id: str) -> bool:
		return chat_id in self._active

	def active_run(self, chat_id: str) -> Optional[ActiveRun]:
		return self._active.get(chat_id)

	def request_stop(self, chat_id: str) -> bool:
		"""Ask the chat's active run to stop. Returns False if none is running."""
		run = self._active.get(chat_id)
		if not run:
			return False
		run.stop_requested = True
		logger.info(f"Stop requested for run {run.run_id} (chat {chat_id})")
		return True

	def on_progress(self, chat_id: str, callback: Observer):
		"""Subscribe to a chat's progress events; returns an unsubscribe handle."""
		return self.hub.subscribe(chat_id, callback)

	async def latest_snapshot(self, chat_id: str) -> Optional[dict[str, Any]]:
		return await self.broadcaster.latest_snapshot(chat_id)

	async def start_run(self, user_input: str, chat_id: Optional[str] = None) -> RunResult:
		"""
		Execute a request end to end.

		Args:
			user_input: The user's request
			chat_id: Existing chat to run in; a new chat is created if missing

		Returns:
			RunResult with counts and a summary

		Raises:
			RunAlreadyActiveError: If the chat already has a run in progress
		"""
		run = self._reserve(user_input, chat_id)
		return await self._execute(run)

	def launch_run(self, user_input: str, chat_id: Optional[str] = None) -> ActiveRun:
		"""
		Start a run in the background and return its identifiers at once.

		Raises:
			RunAlreadyActiveError: If the chat already has a run in progress
		"""
		run = self._reserve(user_input, chat_id)
		task = asyncio.create_task(self._execute(run))
		self._background.add(task)
		task.add_done_callback(self._background_done)
		return run

	def _reserve(self, user_input: str, chat_id: Optional[str]) -> ActiveRun:
		chat_id = chat_id or str(uuid.uuid4())
		if chat_id in self._active:
			raise RunAlreadyActiveError(f"Chat {chat_id} already has an active run")

		run = ActiveRun(run_id=str(uuid.uuid4()), chat_id=chat_id, user_input=user_input)
		self._active[chat_id] = run
		self.hub.open(chat_id)
		return run

	async def _execute(self, run: ActiveRun) -> RunResult:
		logger.info(f"Starting run {run.run_id} for chat {run.chat_id}")
		try:
			return await self._run(run)
		finally:
			self._active.pop(run.chat_id, None)
			self.hub.close(run.chat_id)

	def _background_done(self, task: asyncio.Task) -> None:
		self._background.discard(task)
		if not task.cancelled() and task.exception():
			logger.error(f"Background run failed: {task.exception()}")

	async def wait_background(self) -> None:
		"""Wait for every background run to finish."""
		while self._background:
			await asyncio.gather(*list(self._background), return_exceptions=True)

	# ------------------------------------------------------------------
	# Run phases
	# ------------------------------------------------------------------

	async def _run(self, run: ActiveRun) -> RunResult:
		await self.store.get_or_create_chat(run.chat_id, _chat_name(run.user_input))
		await self.store.append_message(run.chat_id, MessageRole.USER, run.user_input)

		await self._emit(run, RunState.PLANNING, "Analyzing project")
		context = await analyze_project(self.project_root, self.analyzer)

		await self._emit(run, RunState.PLANNING, "Planning overview tasks")
		try:
			descriptions = await self.decomposer.plan_overview_tasks(run.user_input, context)
		except OracleMalformedOutput as e:
			return await self._planning_failed(run, e.reason)

		tasks = await self.store.create_overview_tasks(run.chat_id, run.run_id, descriptions)
		await self._emit(run, RunState.PER_TASK_LOOP, f"Planned {len(tasks)} tasks")

		for index, task in enumerate(tasks):
			if run.stop_requested:
				await self._stop_tasks(tasks[index:])
				await self._emit(run, RunState.PER_TASK_LOOP, "Stopped")
				break
			try:
				await self._run_task(run, context, task)
			except Exception as e:
				logger.exception(f"Task {task.ordinal} failed with an unexpected error: {e}")
				await self._fail_task(task, FailureReason.ERROR, str(e))
				await self._emit(run, RunState.PER_TASK_LOOP, f"Task {task.ordinal} failed: {e}")

		return await self._finish(run)

	async def _run_task(self, run: ActiveRun, context: ProjectContext, task: OverviewTask) -> None:
		await self.store.update_task_status(task.id, TaskStatus.ACTIVE)
		await self._emit(run, RunState.PER_TASK_LOOP, f"Planning task {task.ordinal}: {task.description}")

		specs = await self.decomposer.plan_subtasks(
			run.user_input, context, task, self.registry.catalogue()
		)
		subtasks = await self.store.add_subtasks(task, specs)
		await self._emit(run, RunState.PER_TASK_LOOP, f"Task {task.ordinal}: {len(subtasks)} subtasks")

		all_done = True
		for index, subtask in enumerate(subtasks):
			if run.stop_requested:
				await self._stop_subtasks(subtasks[index:])
				await self.store.update_task_status(task.id, TaskStatus.FAILED, FailureReason.STOPPED)
				await self._emit(run, RunState.PER_TASK_LOOP, f"Task {task.ordinal} stopped")
				return

			if not await self._run_subtask(run, subtask):
				all_done = False

		if all_done:
			await self.store.update_task_status(task.id, TaskStatus.DONE)
		else:
			await self.store.update_task_status(task.id, TaskStatus.FAILED, FailureReason.SUBTASK_FAILED)
		await self._emit(
			run,
			RunState.PER_TASK_LOOP,
			f"Task {task.ordinal} {'done' if all_done else 'failed'}",
		)

	async def _run_subtask(self, run: ActiveRun, subtask: Subtask) -> bool:
		await self.store.update_subtask_status(subtask.id, SubtaskStatus.ACTIVE)
		await self._emit(run, RunState.PER_TASK_LOOP, subtask.explanation)

		run.executed += 1
		result = await self.executor.execute(subtask)

		payload = result.to_payload()
		if not result.success:
			payload["reason"] = FailureReason.ERROR.value
		status = SubtaskStatus.DONE if result.success else SubtaskStatus.FAILED
		await self.store.update_subtask_status(subtask.id, status, payload)

		step = {
			"subtask_id": subtask.id,
			"task_ordinal": subtask.task_ordinal,
			"position": subtask.position,
			"operation": subtask.operation,
			"parameters": {k: _preview(v) for k, v in subtask.parameters.items()},
			"success": result.success,
			"attempts": result.attempts,
			"fallback": subtask.fallback,
		}
		if result.success:
			step["output"] = _preview(result.output)
		else:
			step["error"] = result.error
		await self.store.append_message(
			run.chat_id,
			MessageRole.AGENT,
			f"{subtask.operation}: {subtask.explanation}",
			variant=MessageVariant.TOOL_STEP,
			payload=step,
			run_id=run.run_id,
		)
		await self._emit(
			run,
			RunState.PER_TASK_LOOP,
			f"{subtask.operation} {'succeeded' if result.success else 'failed'}",
		)
		return result.success

	async def _planning_failed(self, run: ActiveRun, reason: str) -> RunResult:
		summary = f"Could not plan tasks for this request: {reason}"
		await self.store.append_message(
			run.chat_id,
			MessageRole.AGENT,
			summary,
			payload={
				"error": reason,
				"reason": FailureReason.DECOMPOSITION_FAILED.value,
				"state": RunState.FAILED.value,
			},
			run_id=run.run_id,
		)
		await self._emit(run, RunState.FAILED, summary)
		logger.error(f"Run {run.run_id} failed during planning: {reason}")
		return RunResult(
			run_id=run.run_id,
			chat_id=run.chat_id,
			state=RunState.FAILED,
			success=False,
			summary=summary,
			error=reason,
		)

	async def _finish(self, run: ActiveRun) -> RunResult:
		tasks = await self.store.get_overview_tasks(run.chat_id, run.run_id)
		total = len(tasks)
		successful = sum(1 for t in tasks if t.status == TaskStatus.DONE)
		failed = sum(1 for t in tasks if t.status == TaskStatus.FAILED)
		# A stop that arrives after the last subtask has started cuts nothing short
		stopped = any(t.failure_reason == FailureReason.STOPPED for t in tasks)

		if stopped and run.executed == 0:
			state = RunState.CANCELLED
		elif failed == 0 and successful == total:
			state = RunState.COMPLETED
		else:
			state = RunState.COMPLETED_WITH_ERRORS
		success = state == RunState.COMPLETED

		if success:
			summary = "All overview tasks completed successfully"
		else:
			summary = f"{successful}/{total} overview tasks completed successfully"
			if stopped:
				summary += " (stopped)"

		await self.store.append_message(
			run.chat_id,
			MessageRole.AGENT,
			summary,
			payload={
				"success": success,
				"state": state.value,
				"total_tasks": total,
				"successful_tasks": successful,
				"failed_tasks": failed,
				"stopped": stopped,
			},
			run_id=run.run_id,
		)
		await self._emit(run, state, summary, tasks=tasks)
		logger.info(f"Run {run.run_id} finished: {state.value} ({summary})")

		return RunResult(
			run_id=run.run_id,
			chat_id=run.chat_id,
			state=state,
			success=success,
			total_tasks=total,
			successful_tasks=successful,
			failed_tasks=failed,
			stopped=stopped,
			summary=summary,
			tasks=tasks,
		)

	# ------------------------------------------------------------------
	# Helpers
	# ------------------------------------------------------------------

	async def _stop_subtasks(self, subtasks: list[Subtask]) -> None:
		for subtask in subtasks:
			await self.store.update_subtask_status(
				subtask.id,
				SubtaskStatus.FAILED,
				{"reason": FailureReason.STOPPED.value, "attempts": 0},
			)

	async def _stop_tasks(self, tasks: list[OverviewTask]) -> None:
		for task in tasks:
			await self.store.update_task_status(task.id, TaskStatus.FAILED, FailureReason.STOPPED)

	async def _fail_task(self, task: OverviewTask, reason: FailureReason, error: str) -> None:
		"""Fail a task and its unfinished subtasks, skipping anything already terminal."""
		current = await self.store.get_overview_task(task.id)
		if current is None or current.is_terminal:
			return
		for subtask in current.subtasks:
			if not subtask.is_terminal:
				await self.store.update_subtask_status(
					subtask.id,
					SubtaskStatus.FAILED,
					{"reason": reason.value, "error": error},
				)
		await self.store.update_task_status(task.id, TaskStatus.FAILED, reason)

	async def _emit(
		self,
		run: ActiveRun,
		state: RunState,
		current_thought: str,
		tasks: Optional[list[OverviewTask]] = None,
	) -> None:
		try:
			if tasks is None:
				tasks = await self.store.get_overview_tasks(run.chat_id, run.run_id)
			await self.broadcaster.emit(
				run.chat_id, run.run_id, tasks, current_thought, state
			)
		except Exception as e:
			logger.error(f"Progress emission failed for run {run.run_id}: {e}")


def create_orchestrator(
	store: TaskStore,
	config=None,
	oracle=None,
	registry: Optional[ToolRegistry] = None,
	hub: Optional[ObserverHub] = None,
) -> Orchestrator:
	"""Wire an Orchestrator from configuration, using the shipped oracle and registry by default."""
	from ..config import get_config
	from ..operations.files import create_default_registry
	from ..oracle import ClaudeCLIOracle

	config = config or get_config()
	oracle = oracle or ClaudeCLIOracle(
		command=config.oracle_command,
		timeout=config.oracle_timeout,
		cwd=str(config.project_root),
	)
	registry = registry or create_default_registry(config.project_root)
	decomposer = Decomposer(oracle, max_subtasks=config.max_subtasks, timeout=config.oracle_timeout)
	executor = Executor(
		registry,
		max_attempts=config.max_attempts,
		backoff_base=config.backoff_base,
		backoff_max=config.backoff_max,
		tool_timeout=config.tool_timeout,
	)
	return Orchestrator(store, decomposer, executor, registry, config.project_root, hub=hub)


# Global orchestrator instance
_orchestrator: Optional[Orchestrator] = None


async def get_orchestrator() -> Orchestrator:
	"""Get or create the global orchestrator."""
	global _orchestrator
	if _orchestrator is None:
		from ..tasks.store import get_task_store
		_orchestrator = create_orchestrator(await get_task_store())
	return _orchestrator
