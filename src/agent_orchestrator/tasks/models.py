"""
Task Models - Pydantic schemas for the chat / task / subtask hierarchy.

A Chat owns its OverviewTasks and Messages; each OverviewTask owns its
Subtasks. Statuses only move forward: once a task or subtask reaches a
terminal status it stays there.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _now() -> str:
	return datetime.now().isoformat()


class ChatStatus(str, Enum):
	"""Lifecycle of a chat. Deletion is a soft status change."""
	ACTIVE = "active"
	ARCHIVED = "archived"
	DELETED = "deleted"


class TaskStatus(str, Enum):
	"""Status of an overview task."""
	PENDING = "pending"
	ACTIVE = "active"
	DONE = "done"
	FAILED = "failed"


class SubtaskStatus(str, Enum):
	"""Status of a subtask."""
	PENDING = "pending"
	ACTIVE = "active"
	DONE = "done"
	FAILED = "failed"
	SKIPPED = "skipped"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED})
TERMINAL_SUBTASK_STATUSES = frozenset({
	SubtaskStatus.DONE,
	SubtaskStatus.FAILED,
	SubtaskStatus.SKIPPED,
})


class FailureReason(str, Enum):
	"""Reason codes recorded on failed tasks and subtasks."""
	STOPPED = "stopped"
	SUBTASK_FAILED = "subtask_failed"
	DECOMPOSITION_FAILED = "decomposition_failed"
	ERROR = "error"


class MessageRole(str, Enum):
	USER = "user"
	AGENT = "agent"


class MessageVariant(str, Enum):
	"""What a message payload contains."""
	TEXT = "text"
	TASK_SNAPSHOT = "task_snapshot"
	TOOL_STEP = "tool_step"


class RunState(str, Enum):
	"""State of an end-to-end run."""
	PLANNING = "planning"
	PER_TASK_LOOP = "per_task_loop"
	COMPLETED = "completed"
	COMPLETED_WITH_ERRORS = "completed_with_errors"
	FAILED = "failed"
	CANCELLED = "cancelled"


TERMINAL_RUN_STATES = frozenset({
	RunState.COMPLETED,
	RunState.COMPLETED_WITH_ERRORS,
	RunState.FAILED,
	RunState.CANCELLED,
})


class Chat(BaseModel):
	"""A conversation container."""
	id: str = Field(description="Unique chat identifier")
	name: str = Field(description="Display name")
	status: ChatStatus = Field(default=ChatStatus.ACTIVE)
	created_at: str = Field(default_factory=_now)
	last_message_at: str = Field(default_factory=_now)
	message_count: int = Field(default=0)


class SubtaskSpec(BaseModel):
	"""A validated subtask description produced by decomposition."""
	operation: str = Field(description="Registered operation name")
	parameters: dict[str, Any] = Field(default_factory=dict)
	explanation: str = Field(description="What this subtask does")
	fallback: bool = Field(default=False, description="Synthesized after an oracle failure")


class Subtask(BaseModel):
	"""A leaf, tool-backed unit of work owned by one overview task."""
	id: str
	overview_task_id: str
	task_ordinal: int = Field(description="Ordinal of the owning task (lookup only)")
	position: int = Field(description="Execution order within the owning task")
	operation: str
	parameters: dict[str, Any] = Field(default_factory=dict)
	explanation: str = ""
	status: SubtaskStatus = Field(default=SubtaskStatus.PENDING)
	result: Optional[dict[str, Any]] = Field(default=None)
	fallback: bool = False
	created_at: str = Field(default_factory=_now)
	updated_at: str = Field(default_factory=_now)

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_SUBTASK_STATUSES


class OverviewTask(BaseModel):
	"""A top-level, ordered unit of work belonging to one chat."""
	id: str
	chat_id: str
	run_id: str
	ordinal: int = Field(description="Unique, increasing position within the chat")
	description: str
	status: TaskStatus = Field(default=TaskStatus.PENDING)
	failure_reason: Optional[FailureReason] = Field(default=None)
	subtasks: list[Subtask] = Field(default_factory=list)
	created_at: str = Field(default_factory=_now)
	updated_at: str = Field(default_factory=_now)

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_TASK_STATUSES


class Message(BaseModel):
	"""An entry in a chat transcript."""
	id: str
	chat_id: str
	role: MessageRole
	variant: MessageVariant = Field(default=MessageVariant.TEXT)
	content: str = ""
	payload: dict[str, Any] = Field(default_factory=dict)
	run_id: Optional[str] = Field(default=None)
	created_at: str = Field(default_factory=_now)
	updated_at: str = Field(default_factory=_now)


class ProjectContext(BaseModel):
	"""Snapshot of the project a request runs against."""
	root: str = ""
	name: str = ""
	framework: str = "unknown"
	language: str = "unknown"
	key_files: list[str] = Field(default_factory=list)
	entry_points: list[str] = Field(default_factory=list)
	dependencies: list[str] = Field(default_factory=list)
	structure: list[str] = Field(default_factory=list, description="Relative paths, depth-limited")
	summary: str = ""

	def to_prompt(self) -> str:
		"""Render the context as a compact prompt section."""
		lines = [
			f"Project: {self.name or '(unnamed)'}",
			f"Framework: {self.framework}",
			f"Language: {self.language}",
		]
		if self.entry_points:
			lines.append(f"Entry points: {', '.join(self.entry_points)}")
		if self.key_files:
			lines.append(f"Key files: {', '.join(self.key_files)}")
		if self.dependencies:
			lines.append(f"Dependencies: {', '.join(self.dependencies[:30])}")
		if self.summary:
			lines.append(f"Summary: {self.summary}")
		if self.structure:
			lines.append("Structure:")
			lines.extend(f"  {p}" for p in self.structure[:200])
		return "\n".join(lines)


class Progress(BaseModel):
	completed: int = 0
	total: int = 0
	percent: int = 0

	@classmethod
	def from_tasks(cls, tasks: list[OverviewTask]) -> "Progress":
		"""Count overview tasks in a terminal status."""
		total = len(tasks)
		completed = sum(1 for t in tasks if t.is_terminal)
		percent = round(completed / total * 100) if total else 0
		return cls(completed=completed, total=total, percent=percent)


class ProgressEvent(BaseModel):
	"""A full progress snapshot for one run, sent to every sink."""
	type: str = Field(default="progress", description="progress, run_finished")
	chat_id: str
	run_id: str
	state: RunState
	tasks: list[OverviewTask] = Field(default_factory=list)
	current_thought: str = ""
	progress: Progress = Field(default_factory=Progress)
	timestamp: str = Field(default_factory=_now)


class RunResult(BaseModel):
	"""Aggregate outcome of a run."""
	run_id: str
	chat_id: str
	state: RunState
	success: bool
	total_tasks: int = 0
	successful_tasks: int = 0
	failed_tasks: int = 0
	stopped: bool = False
	summary: str = ""
	error: Optional[str] = None
	tasks: list[OverviewTask] = Field(default_factory=list)
