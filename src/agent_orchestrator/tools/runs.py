"""Run control tools: start, stop, and inspect orchestrator runs."""

import json

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..orchestrator.engine import RunAlreadyActiveError, get_orchestrator
from ..tasks.store import get_task_store


def register_run_tools(mcp: FastMCP, config: Config) -> None:
	"""Register run control tools."""

	@mcp.tool()
	async def start_run(request: str, chat_id: str = "", wait: bool = False) -> str:
		"""
		Start an orchestrator run for a request.

		Args:
			request: What to build or change in the project
			chat_id: Existing chat to continue (empty = new chat)
			wait: Block until the run finishes and return its result
		"""
		orchestrator = await get_orchestrator()
		try:
			if wait:
				result = await orchestrator.start_run(request, chat_id or None)
				return json.dumps(result.model_dump(mode="json"), indent=2)
			run = orchestrator.launch_run(request, chat_id or None)
		except RunAlreadyActiveError as e:
			return json.dumps({"success": False, "error": str(e)})

		return json.dumps({
			"success": True,
			"chat_id": run.chat_id,
			"run_id": run.run_id,
			"status": "started",
		}, indent=2)

	@mcp.tool()
	async def request_stop(chat_id: str) -> str:
		"""
		Stop the active run of a chat after its current operation finishes.

		Args:
			chat_id: The chat whose run should stop
		"""
		orchestrator = await get_orchestrator()
		stopped = orchestrator.request_stop(chat_id)
		return json.dumps({
			"success": stopped,
			"chat_id": chat_id,
			"message": "Stop requested" if stopped else "No active run for this chat",
		})

	@mcp.tool()
	async def get_progress(chat_id: str) -> str:
		"""
		Get the latest progress snapshot of a chat.

		Args:
			chat_id: The chat ID
		"""
		orchestrator = await get_orchestrator()
		snapshot = await orchestrator.latest_snapshot(chat_id)
		if snapshot is None:
			return json.dumps({"error": f"No snapshot for chat: {chat_id}"})
		return json.dumps({
			"running": orchestrator.is_running(chat_id),
			"snapshot": snapshot,
		}, indent=2)

	@mcp.tool()
	async def list_chat_tasks(chat_id: str, run_id: str = "") -> str:
		"""
		List a chat's overview tasks and their subtasks.

		Args:
			chat_id: The chat ID
			run_id: Optional run ID to filter by
		"""
		store = await get_task_store()
		chat = await store.get_chat(chat_id)
		if not chat:
			return json.dumps({"error": f"Chat not found: {chat_id}"})

		tasks = await store.get_overview_tasks(chat_id, run_id or None)
		return json.dumps({
			"chat": chat.model_dump(mode="json"),
			"tasks": [
				{
					"ordinal": t.ordinal,
					"run_id": t.run_id,
					"description": t.description,
					"status": t.status.value,
					"failure_reason": t.failure_reason.value if t.failure_reason else None,
					"subtasks": [
						{
							"position": s.position,
							"operation": s.operation,
							"explanation": s.explanation,
							"status": s.status.value,
							"fallback": s.fallback,
						}
						for s in t.subtasks
					],
				}
				for t in tasks
			],
		}, indent=2)
