"""JSON API endpoints and SSE stream for runs."""

from __future__ import annotations

import asyncio
import json
from typing import AsyncGenerator

from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse

from ..orchestrator.engine import Orchestrator, RunAlreadyActiveError
from ..orchestrator.progress import EVENT_RUN_FINISHED
from ..tasks.models import MessageVariant, ProgressEvent

HEARTBEAT_SECONDS = 15.0


def get_orchestrator(request: Request) -> Orchestrator:
	"""Get the Orchestrator from app state."""
	return request.app.state.orchestrator


async def api_health(request: Request) -> JSONResponse:
	return JSONResponse({"status": "ok"})


async def api_start_run(request: Request) -> JSONResponse:
	"""Start a run. Body: {"request": str, "chat_id"?: str, "wait"?: bool}."""
	orchestrator = get_orchestrator(request)
	try:
		body = await request.json()
	except json.JSONDecodeError:
		return JSONResponse({"error": "Body must be JSON"}, status_code=400)

	user_input = (body.get("request") or "").strip() if isinstance(body, dict) else ""
	if not user_input:
		return JSONResponse({"error": "Field 'request' is required"}, status_code=400)
	chat_id = body.get("chat_id") or None

	try:
		if body.get("wait"):
			result = await orchestrator.start_run(user_input, chat_id)
			return JSONResponse(result.model_dump(mode="json"))
		run = orchestrator.launch_run(user_input, chat_id)
	except RunAlreadyActiveError as e:
		return JSONResponse({"error": str(e)}, status_code=409)

	return JSONResponse(
		{"chat_id": run.chat_id, "run_id": run.run_id, "status": "started"},
		status_code=202,
	)


async def api_chats(request: Request) -> JSONResponse:
	"""Chat list, most recently active first."""
	orchestrator = get_orchestrator(request)
	include_deleted = request.query_params.get("all") in ("1", "true")
	chats = await orchestrator.store.list_chats(include_deleted=include_deleted)
	return JSONResponse([c.model_dump(mode="json") for c in chats])


async def api_chat_stop(request: Request) -> JSONResponse:
	orchestrator = get_orchestrator(request)
	chat_id = request.path_params["id"]
	stopped = orchestrator.request_stop(chat_id)
	return JSONResponse({"chat_id": chat_id, "stopped": stopped})


async def api_chat_snapshot(request: Request) -> JSONResponse:
	"""Latest persisted progress snapshot of a chat."""
	orchestrator = get_orchestrator(request)
	chat_id = request.path_params["id"]
	snapshot = await orchestrator.latest_snapshot(chat_id)
	if snapshot is None:
		return JSONResponse({"error": f"No snapshot for chat: {chat_id}"}, status_code=404)
	return JSONResponse({"running": orchestrator.is_running(chat_id), "snapshot": snapshot})


async def api_chat_messages(request: Request) -> JSONResponse:
	"""Chat transcript, optionally filtered by ?variant=."""
	orchestrator = get_orchestrator(request)
	chat_id = request.path_params["id"]
	if not await orchestrator.store.get_chat(chat_id):
		return JSONResponse({"error": f"Chat not found: {chat_id}"}, status_code=404)

	variant = request.query_params.get("variant")
	try:
		variant_filter = MessageVariant(variant) if variant else None
	except ValueError:
		return JSONResponse({"error": f"Unknown variant: {variant}"}, status_code=400)

	messages = await orchestrator.store.list_messages(chat_id, variant_filter)
	return JSONResponse([m.model_dump(mode="json") for m in messages])


async def api_chat_tasks(request: Request) -> JSONResponse:
	"""Overview tasks with subtasks, optionally for one ?run_id=."""
	orchestrator = get_orchestrator(request)
	chat_id = request.path_params["id"]
	if not await orchestrator.store.get_chat(chat_id):
		return JSONResponse({"error": f"Chat not found: {chat_id}"}, status_code=404)
	tasks = await orchestrator.store.get_overview_tasks(chat_id, request.query_params.get("run_id"))
	return JSONResponse([t.model_dump(mode="json") for t in tasks])


def _sse(event: str, data: str) -> str:
	return f"event: {event}\ndata: {data}\n\n"


async def _sse_generator(orchestrator: Orchestrator, chat_id: str) -> AsyncGenerator[str, None]:
	"""Latest persisted snapshot first, then live events until the run finishes."""
	queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
	unsubscribe = orchestrator.on_progress(chat_id, queue.put_nowait)
	try:
		yield _sse("connected", json.dumps({"chat_id": chat_id}))

		snapshot = await orchestrator.latest_snapshot(chat_id)
		if snapshot is not None:
			yield _sse("snapshot", json.dumps(snapshot))

		while True:
			if queue.empty() and not orchestrator.is_running(chat_id):
				return
			try:
				event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
			except asyncio.TimeoutError:
				# Heartbeat to keep connection alive
				yield ": heartbeat\n\n"
				continue
			yield _sse(event.type, event.model_dump_json())
			if event.type == EVENT_RUN_FINISHED:
				return
	finally:
		unsubscribe()


async def api_stream(request: Request) -> StreamingResponse:
	"""SSE endpoint - streams progress snapshots of a chat."""
	orchestrator = get_orchestrator(request)
	return StreamingResponse(
		_sse_generator(orchestrator, request.path_params["id"]),
		media_type="text/event-stream",
		headers={
			"Cache-Control": "no-cache",
			"Connection": "keep-alive",
			"X-Accel-Buffering": "no",
		},
	)
