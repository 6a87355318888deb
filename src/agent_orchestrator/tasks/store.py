"""
Task Store - SQLite-backed storage for chats, tasks, subtasks and messages.

Features:
- Chats with soft-delete status transitions
- Overview tasks with per-chat unique, increasing ordinals
- Single-row status updates that never leave a terminal status
- One live task-snapshot message per run, upserted in place
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .models import (
	Chat,
	ChatStatus,
	FailureReason,
	Message,
	MessageRole,
	MessageVariant,
	OverviewTask,
	Subtask,
	SubtaskSpec,
	SubtaskStatus,
	TaskStatus,
	TERMINAL_SUBTASK_STATUSES,
	TERMINAL_TASK_STATUSES,
)

logger = logging.getLogger(__name__)


class TaskStoreError(Exception):
	"""Base class for task store failures."""
	pass


class NotFoundError(TaskStoreError):
	"""Raised when a chat, task or subtask does not exist."""
	pass


class InvalidTransitionError(TaskStoreError):
	"""Raised when an update would move an item out of a terminal status."""
	pass


SCHEMA = """
	CREATE TABLE IF NOT EXISTS chats (
		id TEXT PRIMARY KEY,
		name TEXT NOT NULL,
		status TEXT NOT NULL DEFAULT 'active',
		created_at TEXT NOT NULL,
		last_message_at TEXT NOT NULL,
		message_count INTEGER NOT NULL DEFAULT 0
	);

	CREATE TABLE IF NOT EXISTS overview_tasks (
		id TEXT PRIMARY KEY,
		chat_id TEXT NOT NULL REFERENCES chats(id),
		run_id TEXT NOT NULL,
		ordinal INTEGER NOT NULL,
		description TEXT NOT NULL,
		status TEXT NOT NULL DEFAULT 'pending',
		failure_reason TEXT,
		created_at TEXT NOT NULL,
		updated_at TEXT NOT NULL,
		UNIQUE(chat_id, ordinal)
	);

	CREATE TABLE IF NOT EXISTS subtasks (
		id TEXT PRIMARY KEY,
		overview_task_id TEXT NOT NULL REFERENCES overview_tasks(id),
		task_ordinal INTEGER NOT NULL,
		position INTEGER NOT NULL,
		operation TEXT NOT NULL,
		parameters TEXT NOT NULL DEFAULT '{}',
		explanation TEXT NOT NULL DEFAULT '',
		status TEXT NOT NULL DEFAULT 'pending',
		result TEXT,
		fallback INTEGER NOT NULL DEFAULT 0,
		created_at TEXT NOT NULL,
		updated_at TEXT NOT NULL,
		UNIQUE(overview_task_id, position)
	);

	CREATE TABLE IF NOT EXISTS messages (
		id TEXT PRIMARY KEY,
		chat_id TEXT NOT NULL REFERENCES chats(id),
		role TEXT NOT NULL,
		variant TEXT NOT NULL DEFAULT 'text',
		content TEXT NOT NULL DEFAULT '',
		payload TEXT NOT NULL DEFAULT '{}',
		run_id TEXT,
		live_key TEXT UNIQUE,
		created_at TEXT NOT NULL,
		updated_at TEXT NOT NULL
	);

	CREATE INDEX IF NOT EXISTS idx_tasks_chat ON overview_tasks(chat_id, ordinal);
	CREATE INDEX IF NOT EXISTS idx_tasks_run ON overview_tasks(run_id);
	CREATE INDEX IF NOT EXISTS idx_subtasks_task ON subtasks(overview_task_id, position);
	CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, created_at);
"""


def _now() -> str:
	return datetime.now().isoformat()


def _live_key(chat_id: str, run_id: str) -> str:
	return f"{chat_id}:{run_id}"


def _chat_from_row(row: aiosqlite.Row) -> Chat:
	return Chat(
		id=row["id"],
		name=row["name"],
		status=ChatStatus(row["status"]),
		created_at=row["created_at"],
		last_message_at=row["last_message_at"],
		message_count=row["message_count"],
	)


def _subtask_from_row(row: aiosqlite.Row) -> Subtask:
	return Subtask(
		id=row["id"],
		overview_task_id=row["overview_task_id"],
		task_ordinal=row["task_ordinal"],
		position=row["position"],
		operation=row["operation"],
		parameters=json.loads(row["parameters"]),
		explanation=row["explanation"],
		status=SubtaskStatus(row["status"]),
		result=json.loads(row["result"]) if row["result"] else None,
		fallback=bool(row["fallback"]),
		created_at=row["created_at"],
		updated_at=row["updated_at"],
	)


def _task_from_row(row: aiosqlite.Row, subtasks: Optional[list[Subtask]] = None) -> OverviewTask:
	return OverviewTask(
		id=row["id"],
		chat_id=row["chat_id"],
		run_id=row["run_id"],
		ordinal=row["ordinal"],
		description=row["description"],
		status=TaskStatus(row["status"]),
		failure_reason=FailureReason(row["failure_reason"]) if row["failure_reason"] else None,
		subtasks=subtasks or [],
		created_at=row["created_at"],
		updated_at=row["updated_at"],
	)


def _message_from_row(row: aiosqlite.Row) -> Message:
	return Message(
		id=row["id"],
		chat_id=row["chat_id"],
		role=MessageRole(row["role"]),
		variant=MessageVariant(row["variant"]),
		content=row["content"],
		payload=json.loads(row["payload"]),
		run_id=row["run_id"],
		created_at=row["created_at"],
		updated_at=row["updated_at"],
	)


class TaskStore:
	"""
	SQLite-backed task storage.

	Usage:
		store = TaskStore("data/orchestrator.db")
		await store.init()

		chat = await store.create_chat("Contact form")
		tasks = await store.create_overview_tasks(chat.id, run_id, ["Build the form"])
		await store.update_task_status(tasks[0].id, TaskStatus.ACTIVE)
	"""

	# Allowlist of chat columns that can be updated (prevents SQL injection via column names)
	ALLOWED_CHAT_UPDATE_COLUMNS = frozenset({"name", "status"})

	def __init__(self, db_path: str):
		"""Initialize the task store."""
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None
		self._write_lock = asyncio.Lock()

	async def init(self):
		"""Initialize the database schema."""
		if self._db:
			return
		self._db = await aiosqlite.connect(str(self.db_path))
		self._db.row_factory = aiosqlite.Row
		await self._db.execute("PRAGMA foreign_keys = ON")
		await self._db.executescript(SCHEMA)
		await self._db.commit()
		logger.info(f"Task store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def _conn(self) -> aiosqlite.Connection:
		if not self._db:
			await self.init()
		return self._db

	async def _fetchone(self, query: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
		db = await self._conn()
		async with db.execute(query, params) as cursor:
			return await cursor.fetchone()

	async def _fetchall(self, query: str, params: tuple = ()) -> list[aiosqlite.Row]:
		db = await self._conn()
		async with db.execute(query, params) as cursor:
			return list(await cursor.fetchall())

	# ------------------------------------------------------------------
	# Chats
	# ------------------------------------------------------------------

	async def create_chat(self, name: str, chat_id: Optional[str] = None) -> Chat:
		"""Create a new chat."""
		db = await self._conn()
		now = _now()
		chat = Chat(
			id=chat_id or str(uuid.uuid4()),
			name=name.strip() or "New chat",
			created_at=now,
			last_message_at=now,
		)
		async with self._write_lock:
			await db.execute(
				"""
				INSERT INTO chats (id, name, status, created_at, last_message_at, message_count)
				VALUES (?, ?, ?, ?, ?, 0)
				""",
				(chat.id, chat.name, chat.status.value, chat.created_at, chat.last_message_at),
			)
			await db.commit()
		logger.info(f"Created chat {chat.id}")
		return chat

	async def get_chat(self, chat_id: str) -> Optional[Chat]:
		"""Get a chat by ID."""
		row = await self._fetchone("SELECT * FROM chats WHERE id = ?", (chat_id,))
		return _chat_from_row(row) if row else None

	async def get_or_create_chat(self, chat_id: Optional[str], name: str) -> Chat:
		"""Return the chat with this ID, creating it on first use."""
		if chat_id:
			chat = await self.get_chat(chat_id)
			if chat:
				return chat
		return await self.create_chat(name, chat_id=chat_id)

	async def list_chats(self, include_deleted: bool = False) -> list[Chat]:
		"""List chats, most recently active first."""
		if include_deleted:
			rows = await self._fetchall("SELECT * FROM chats ORDER BY last_message_at DESC")
		else:
			rows = await self._fetchall(
				"SELECT * FROM chats WHERE status != ? ORDER BY last_message_at DESC",
				(ChatStatus.DELETED.value,),
			)
		return [_chat_from_row(row) for row in rows]

	async def update_chat(self, chat_id: str, **updates) -> Chat:
		"""Update chat columns by name."""
		invalid_columns = set(updates.keys()) - self.ALLOWED_CHAT_UPDATE_COLUMNS
		if invalid_columns:
			raise ValueError(f"Invalid columns for update: {invalid_columns}")

		values = [v.value if isinstance(v, ChatStatus) else v for v in updates.values()]
		set_clause = ", ".join(f"{k} = ?" for k in updates.keys())

		db = await self._conn()
		async with self._write_lock:
			cursor = await db.execute(
				f"UPDATE chats SET {set_clause} WHERE id = ?",
				[*values, chat_id],
			)
			await db.commit()
		if cursor.rowcount == 0:
			raise NotFoundError(f"Chat not found: {chat_id}")
		return await self.get_chat(chat_id)

	async def set_chat_status(self, chat_id: str, status: ChatStatus) -> Chat:
		"""Archive, delete or reactivate a chat. Rows are never removed."""
		return await self.update_chat(chat_id, status=status)

	# ------------------------------------------------------------------
	# Messages
	# ------------------------------------------------------------------

	async def append_message(
		self,
		chat_id: str,
		role: MessageRole,
		content: str,
		variant: MessageVariant = MessageVariant.TEXT,
		payload: Optional[dict[str, Any]] = None,
		run_id: Optional[str] = None,
	) -> Message:
		"""Append an immutable message and bump the chat's activity counters."""
		db = await self._conn()
		now = _now()
		message = Message(
			id=str(uuid.uuid4()),
			chat_id=chat_id,
			role=role,
			variant=variant,
			content=content,
			payload=payload or {},
			run_id=run_id,
			created_at=now,
			updated_at=now,
		)
		async with self._write_lock:
			try:
				await self._insert_message(db, message, live_key=None)
				await db.commit()
			except Exception:
				await db.rollback()
				raise
		return message

	async def upsert_live_snapshot(
		self,
		chat_id: str,
		run_id: str,
		content: str,
		payload: dict[str, Any],
	) -> Message:
		"""
		Create or update the single live snapshot message of a run.

		Keyed by (chat_id, run_id): the first call inserts, later calls
		rewrite content and payload in place. Only the insert counts
		toward the chat's message count.
		"""
		db = await self._conn()
		key = _live_key(chat_id, run_id)
		now = _now()
		async with self._write_lock:
			try:
				cursor = await db.execute(
					"UPDATE messages SET content = ?, payload = ?, updated_at = ? WHERE live_key = ?",
					(content, json.dumps(payload, default=str), now, key),
				)
				if cursor.rowcount == 0:
					message = Message(
						id=str(uuid.uuid4()),
						chat_id=chat_id,
						role=MessageRole.AGENT,
						variant=MessageVariant.TASK_SNAPSHOT,
						content=content,
						payload=payload,
						run_id=run_id,
						created_at=now,
						updated_at=now,
					)
					await self._insert_message(db, message, live_key=key)
				await db.commit()
			except Exception:
				await db.rollback()
				raise

		row = await self._fetchone("SELECT * FROM messages WHERE live_key = ?", (key,))
		return _message_from_row(row)

	async def _insert_message(self, db: aiosqlite.Connection, message: Message, live_key: Optional[str]):
		cursor = await db.execute(
			"""
			UPDATE chats SET last_message_at = ?, message_count = message_count + 1
			WHERE id = ?
			""",
			(message.created_at, message.chat_id),
		)
		if cursor.rowcount == 0:
			raise NotFoundError(f"Chat not found: {message.chat_id}")
		await db.execute(
			"""
			INSERT INTO messages (id, chat_id, role, variant, content, payload, run_id,
				live_key, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
			""",
			(
				message.id,
				message.chat_id,
				message.role.value,
				message.variant.value,
				message.content,
				json.dumps(message.payload, default=str),
				message.run_id,
				live_key,
				message.created_at,
				message.updated_at,
			),
		)

	async def latest_snapshot(self, chat_id: str) -> Optional[Message]:
		"""Get the most recently updated live snapshot for a chat."""
		row = await self._fetchone(
			"""
			SELECT * FROM messages WHERE chat_id = ? AND variant = ?
			ORDER BY updated_at DESC, rowid DESC LIMIT 1
			""",
			(chat_id, MessageVariant.TASK_SNAPSHOT.value),
		)
		return _message_from_row(row) if row else None

	async def list_messages(
		self,
		chat_id: str,
		variant: Optional[MessageVariant] = None,
	) -> list[Message]:
		"""List a chat's messages in creation order."""
		if variant:
			rows = await self._fetchall(
				"SELECT * FROM messages WHERE chat_id = ? AND variant = ? ORDER BY created_at, rowid",
				(chat_id, variant.value),
			)
		else:
			rows = await self._fetchall(
				"SELECT * FROM messages WHERE chat_id = ? ORDER BY created_at, rowid",
				(chat_id,),
			)
		return [_message_from_row(row) for row in rows]

	# ------------------------------------------------------------------
	# Overview tasks
	# ------------------------------------------------------------------

	async def create_overview_tasks(
		self,
		chat_id: str,
		run_id: str,
		descriptions: list[str],
	) -> list[OverviewTask]:
		"""
		Create overview tasks for a run.

		Ordinals continue from the chat's highest existing ordinal, so they
		stay unique and increasing across runs.
		"""
		db = await self._conn()
		tasks: list[OverviewTask] = []
		async with self._write_lock:
			try:
				async with db.execute(
					"SELECT COALESCE(MAX(ordinal), 0) FROM overview_tasks WHERE chat_id = ?",
					(chat_id,),
				) as cursor:
					row = await cursor.fetchone()
				ordinal = row[0]

				for description in descriptions:
					ordinal += 1
					now = _now()
					task = OverviewTask(
						id=str(uuid.uuid4()),
						chat_id=chat_id,
						run_id=run_id,
						ordinal=ordinal,
						description=description,
						created_at=now,
						updated_at=now,
					)
					await db.execute(
						"""
						INSERT INTO overview_tasks (id, chat_id, run_id, ordinal, description,
							status, failure_reason, created_at, updated_at)
						VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
						""",
						(
							task.id,
							task.chat_id,
							task.run_id,
							task.ordinal,
							task.description,
							task.status.value,
							task.created_at,
							task.updated_at,
						),
					)
					tasks.append(task)
				await db.commit()
			except Exception:
				await db.rollback()
				raise

		logger.info(f"Created {len(tasks)} overview tasks for chat {chat_id} (run {run_id})")
		return tasks

	async def get_overview_task(self, task_id: str) -> Optional[OverviewTask]:
		"""Get an overview task with its subtasks."""
		row = await self._fetchone("SELECT * FROM overview_tasks WHERE id = ?", (task_id,))
		if not row:
			return None
		return _task_from_row(row, await self.get_subtasks(task_id))

	async def get_overview_tasks(self, chat_id: str, run_id: Optional[str] = None) -> list[OverviewTask]:
		"""Get a chat's overview tasks in ordinal order, optionally for one run."""
		if run_id:
			rows = await self._fetchall(
				"SELECT * FROM overview_tasks WHERE chat_id = ? AND run_id = ? ORDER BY ordinal",
				(chat_id, run_id),
			)
		else:
			rows = await self._fetchall(
				"SELECT * FROM overview_tasks WHERE chat_id = ? ORDER BY ordinal",
				(chat_id,),
			)
		return [_task_from_row(row, await self.get_subtasks(row["id"])) for row in rows]

	async def update_task_status(
		self,
		task_id: str,
		status: TaskStatus,
		failure_reason: Optional[FailureReason] = None,
	) -> OverviewTask:
		"""
		Update an overview task's status.

		Raises:
			InvalidTransitionError: If the task is already done or failed
			NotFoundError: If the task does not exist
		"""
		terminal = tuple(s.value for s in TERMINAL_TASK_STATUSES)
		db = await self._conn()
		async with self._write_lock:
			cursor = await db.execute(
				f"""
				UPDATE overview_tasks SET status = ?, failure_reason = ?, updated_at = ?
				WHERE id = ? AND status NOT IN ({",".join("?" * len(terminal))})
				""",
				(
					status.value,
					failure_reason.value if failure_reason else None,
					_now(),
					task_id,
					*terminal,
				),
			)
			await db.commit()

		if cursor.rowcount == 0:
			existing = await self.get_overview_task(task_id)
			if not existing:
				raise NotFoundError(f"Overview task not found: {task_id}")
			raise InvalidTransitionError(
				f"Overview task {task_id} is already {existing.status.value}"
			)
		return await self.get_overview_task(task_id)

	# ------------------------------------------------------------------
	# Subtasks
	# ------------------------------------------------------------------

	async def add_subtasks(self, task: OverviewTask, specs: list[SubtaskSpec]) -> list[Subtask]:
		"""Attach decomposed subtasks to an overview task, in order."""
		db = await self._conn()
		subtasks: list[Subtask] = []
		async with self._write_lock:
			try:
				async with db.execute(
					"SELECT COALESCE(MAX(position), 0) FROM subtasks WHERE overview_task_id = ?",
					(task.id,),
				) as cursor:
					row = await cursor.fetchone()
				position = row[0]

				for spec in specs:
					position += 1
					now = _now()
					subtask = Subtask(
						id=str(uuid.uuid4()),
						overview_task_id=task.id,
						task_ordinal=task.ordinal,
						position=position,
						operation=spec.operation,
						parameters=spec.parameters,
						explanation=spec.explanation,
						fallback=spec.fallback,
						created_at=now,
						updated_at=now,
					)
					await db.execute(
						"""
						INSERT INTO subtasks (id, overview_task_id, task_ordinal, position, operation,
							parameters, explanation, status, result, fallback, created_at, updated_at)
						VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?)
						""",
						(
							subtask.id,
							subtask.overview_task_id,
							subtask.task_ordinal,
							subtask.position,
							subtask.operation,
							json.dumps(subtask.parameters, default=str),
							subtask.explanation,
							subtask.status.value,
							int(subtask.fallback),
							subtask.created_at,
							subtask.updated_at,
						),
					)
					subtasks.append(subtask)
				await db.commit()
			except Exception:
				await db.rollback()
				raise
		return subtasks

	async def get_subtask(self, subtask_id: str) -> Optional[Subtask]:
		"""Get a subtask by ID."""
		row = await self._fetchone("SELECT * FROM subtasks WHERE id = ?", (subtask_id,))
		return _subtask_from_row(row) if row else None

	async def get_subtasks(self, task_id: str) -> list[Subtask]:
		"""Get an overview task's subtasks in execution order."""
		rows = await self._fetchall(
			"SELECT * FROM subtasks WHERE overview_task_id = ? ORDER BY position",
			(task_id,),
		)
		return [_subtask_from_row(row) for row in rows]

	async def update_subtask_status(
		self,
		subtask_id: str,
		status: SubtaskStatus,
		result: Optional[dict[str, Any]] = None,
	) -> Subtask:
		"""
		Update a subtask's status, setting the result payload when given.

		Raises:
			InvalidTransitionError: If the subtask already reached a terminal status
			NotFoundError: If the subtask does not exist
		"""
		terminal = tuple(s.value for s in TERMINAL_SUBTASK_STATUSES)
		db = await self._conn()
		async with self._write_lock:
			cursor = await db.execute(
				f"""
				UPDATE subtasks SET status = ?, result = COALESCE(?, result), updated_at = ?
				WHERE id = ? AND status NOT IN ({",".join("?" * len(terminal))})
				""",
				(
					status.value,
					json.dumps(result, default=str) if result is not None else None,
					_now(),
					subtask_id,
					*terminal,
				),
			)
			await db.commit()

		if cursor.rowcount == 0:
			existing = await self.get_subtask(subtask_id)
			if not existing:
				raise NotFoundError(f"Subtask not found: {subtask_id}")
			raise InvalidTransitionError(
				f"Subtask {subtask_id} is already {existing.status.value}"
			)
		return await self.get_subtask(subtask_id)


# Global store instance
_store: Optional[TaskStore] = None


async def get_task_store(db_path: str = "") -> TaskStore:
	"""Get or create the global task store."""
	global _store
	if _store is None:
		if not db_path:
			from ..config import get_config
			db_path = str(get_config().db_path)
		_store = TaskStore(db_path)
		await _store.init()
	return _store
