"""Starlette app with route assembly."""

from __future__ import annotations

import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from starlette.applications import Starlette
from starlette.routing import Route

from ..orchestrator.engine import Orchestrator
from .api import (
	api_chat_messages,
	api_chat_snapshot,
	api_chat_stop,
	api_chat_tasks,
	api_chats,
	api_health,
	api_start_run,
	api_stream,
)

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[], Awaitable[Orchestrator]]


async def _default_factory() -> Orchestrator:
	from ..orchestrator.engine import get_orchestrator
	return await get_orchestrator()


def build_app(orchestrator_factory: Optional[OrchestratorFactory] = None) -> Starlette:
	"""Build and return the Starlette ASGI app."""
	factory = orchestrator_factory or _default_factory

	@contextlib.asynccontextmanager
	async def lifespan(app: Starlette) -> AsyncIterator[None]:
		orchestrator = await factory()
		app.state.orchestrator = orchestrator
		logger.info("HTTP API ready")
		try:
			yield
		finally:
			await orchestrator.wait_background()
			await orchestrator.store.close()

	routes = [
		Route("/api/health", api_health),
		Route("/api/runs", api_start_run, methods=["POST"]),
		Route("/api/chats", api_chats),
		Route("/api/chats/{id}/stop", api_chat_stop, methods=["POST"]),
		Route("/api/chats/{id}/snapshot", api_chat_snapshot),
		Route("/api/chats/{id}/messages", api_chat_messages),
		Route("/api/chats/{id}/tasks", api_chat_tasks),
		Route("/api/chats/{id}/stream", api_stream),
	]

	return Starlette(routes=routes, lifespan=lifespan)
