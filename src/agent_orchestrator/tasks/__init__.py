"""Tasks module - Chat / task / subtask data model and durable storage."""

from .models import (
	Chat,
	ChatStatus,
	FailureReason,
	Message,
	MessageRole,
	MessageVariant,
	OverviewTask,
	ProgressEvent,
	ProjectContext,
	RunResult,
	RunState,
	Subtask,
	SubtaskSpec,
	SubtaskStatus,
	TaskStatus,
)
from .store import InvalidTransitionError, NotFoundError, TaskStore, TaskStoreError

__all__ = [
	"Chat",
	"ChatStatus",
	"FailureReason",
	"Message",
	"MessageRole",
	"MessageVariant",
	"OverviewTask",
	"ProgressEvent",
	"ProjectContext",
	"RunResult",
	"RunState",
	"Subtask",
	"SubtaskSpec",
	"SubtaskStatus",
	"TaskStatus",
	"TaskStore",
	"TaskStoreError",
	"NotFoundError",
	"InvalidTransitionError",
]
