"""
Progress - Snapshot broadcasting for live run updates.

Each emission builds a full ProgressEvent and sends it to two sinks:
the run's live snapshot message in the task store, and the observer hub.
Sinks fail independently; neither can fail the run.
"""

import asyncio
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from ..tasks.models import TERMINAL_RUN_STATES, OverviewTask, Progress, ProgressEvent, RunState
from ..tasks.store import TaskStore

logger = logging.getLogger(__name__)

Observer = Callable[[ProgressEvent], Union[None, Awaitable[None]]]

EVENT_PROGRESS = "progress"
EVENT_RUN_FINISHED = "run_finished"


class ObserverHub:
	"""
	Per-chat registry of progress observers.

	Delivery is fire-and-forget: each callback runs in its own asyncio task
	so a slow or failing observer never delays the run.
	"""

	def __init__(self):
		self._observers: dict[str, dict[int, Observer]] = {}
		self._open: set[str] = set()
		self._pending: set[asyncio.Task] = set()
		self._ids = itertools.count(1)

	def open(self, chat_id: str) -> None:
		"""Open the chat's channel for a run."""
		self._open.add(chat_id)

	def close(self, chat_id: str) -> None:
		"""Close the chat's channel and drop its subscribers."""
		self._open.discard(chat_id)
		dropped = self._observers.pop(chat_id, {})
		if dropped:
			logger.debug(f"Closed channel for chat {chat_id}, dropped {len(dropped)} observers")

	def is_open(self, chat_id: str) -> bool:
		return chat_id in self._open

	def subscribe(self, chat_id: str, callback: Observer) -> Callable[[], None]:
		"""Register an observer; returns a handle that unsubscribes it."""
		observer_id = next(self._ids)
		self._observers.setdefault(chat_id, {})[observer_id] = callback

		def unsubscribe():
			observers = self._observers.get(chat_id)
			if observers:
				observers.pop(observer_id, None)
				if not observers:
					self._observers.pop(chat_id, None)

		return unsubscribe

	def subscriber_count(self, chat_id: str) -> int:
		return len(self._observers.get(chat_id, {}))

	def publish(self, event: ProgressEvent) -> None:
		"""Schedule delivery of ``event`` to every observer of its chat."""
		for callback in list(self._observers.get(event.chat_id, {}).values()):
			task = asyncio.create_task(self._deliver(callback, event))
			self._pending.add(task)
			task.add_done_callback(self._pending.discard)

	async def _deliver(self, callback: Observer, event: ProgressEvent) -> None:
		try:
			result = callback(event)
			if inspect.isawaitable(result):
				await result
		except Exception as e:
			logger.warning(f"Observer delivery failed for chat {event.chat_id}: {e}")

	async def drain(self) -> None:
		"""Wait for in-flight deliveries to finish."""
		while self._pending:
			await asyncio.gather(*list(self._pending), return_exceptions=True)


def snapshot_text(progress: Progress, state: RunState, current_thought: str) -> str:
	text = f"{progress.completed}/{progress.total} tasks ({progress.percent}%) - {state.value}"
	if current_thought:
		text += f": {current_thought}"
	return text


class ProgressBroadcaster:
	"""Builds progress snapshots and fans them out to the store and observers."""

	def __init__(self, store: TaskStore, hub: ObserverHub):
		self.store = store
		self.hub = hub

	async def emit(
		self,
		chat_id: str,
		run_id: str,
		tasks: list[OverviewTask],
		current_thought: str,
		state: RunState,
	) -> ProgressEvent:
		"""
		Emit a snapshot of ``tasks``. Never raises on sink failure.

		A terminal ``state`` makes the event a run_finished event.
		"""
		progress = Progress.from_tasks(tasks)
		event = ProgressEvent(
			type=EVENT_RUN_FINISHED if state in TERMINAL_RUN_STATES else EVENT_PROGRESS,
			chat_id=chat_id,
			run_id=run_id,
			state=state,
			tasks=tasks,
			current_thought=current_thought,
			progress=progress,
		)

		try:
			await self.store.upsert_live_snapshot(
				chat_id,
				run_id,
				snapshot_text(progress, state, current_thought),
				event.model_dump(mode="json"),
			)
		except Exception as e:
			logger.error(f"Failed to persist snapshot for run {run_id}: {e}")

		try:
			self.hub.publish(event)
		except Exception as e:
			logger.warning(f"Failed to publish snapshot for run {run_id}: {e}")

		return event

	async def latest_snapshot(self, chat_id: str) -> Optional[dict[str, Any]]:
		"""Latest persisted snapshot payload for a chat, for late subscribers."""
		message = await self.store.latest_snapshot(chat_id)
		return message.payload if message else None
