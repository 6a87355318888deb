"""
Tool Registry - named operations the executor may invoke.

Operations are registered explicitly, either with ``register()`` or the
``operation()`` decorator. Lookup of an unregistered name raises
``UnknownOperationError``; there is no reflective dispatch.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

Handler = Callable[..., Union["ToolResult", Awaitable["ToolResult"], Any]]


class UnknownOperationError(KeyError):
	"""Raised when an operation name has no registered handler."""

	def __init__(self, name: str):
		super().__init__(name)
		self.name = name

	def __str__(self) -> str:
		return f"Unknown tool: {self.name}"


@dataclass
class ToolResult:
	"""Outcome of a single operation invocation."""
	success: bool
	output: Any = None
	error: Optional[str] = None

	@classmethod
	def ok(cls, output: Any = None) -> "ToolResult":
		return cls(success=True, output=output)

	@classmethod
	def fail(cls, error: str) -> "ToolResult":
		return cls(success=False, error=error)


@dataclass(frozen=True)
class OperationSpec:
	"""Catalogue entry shown to the planner oracle."""
	name: str
	description: str
	parameters: dict[str, str] = field(default_factory=dict)

	def to_dict(self) -> dict:
		return {
			"name": self.name,
			"description": self.description,
			"parameters": dict(self.parameters),
		}


class ToolRegistry:
	"""Maps operation names to handlers and their catalogue entries."""

	def __init__(self):
		self._handlers: dict[str, Handler] = {}
		self._specs: dict[str, OperationSpec] = {}

	def register(
		self,
		name: str,
		handler: Handler,
		description: str = "",
		parameters: Optional[dict[str, str]] = None,
	) -> None:
		"""
		Register a handler under ``name``.

		Handlers receive the subtask parameters as keyword arguments and may
		be sync or async. A handler returning something other than a
		``ToolResult`` is treated as a successful output.
		"""
		if name in self._handlers:
			logger.warning(f"Replacing handler for operation '{name}'")
		self._handlers[name] = handler
		self._specs[name] = OperationSpec(
			name=name,
			description=description or (inspect.getdoc(handler) or "").split("\n")[0],
			parameters=dict(parameters or {}),
		)

	def operation(
		self,
		name: Optional[str] = None,
		description: str = "",
		parameters: Optional[dict[str, str]] = None,
	) -> Callable[[Handler], Handler]:
		"""Decorator form of ``register()``."""
		def decorator(func: Handler) -> Handler:
			self.register(name or func.__name__, func, description, parameters)
			return func
		return decorator

	def has(self, name: str) -> bool:
		return name in self._handlers

	def names(self) -> list[str]:
		return list(self._handlers)

	def catalogue(self) -> tuple[OperationSpec, ...]:
		"""Frozen snapshot of every registered operation."""
		return tuple(self._specs.values())

	async def invoke(self, name: str, params: Optional[dict[str, Any]] = None) -> ToolResult:
		"""
		Invoke a registered operation.

		Raises:
			UnknownOperationError: If no handler is registered under ``name``
		"""
		handler = self._handlers.get(name)
		if handler is None:
			raise UnknownOperationError(name)

		params = params or {}
		try:
			inspect.signature(handler).bind(**params)
		except TypeError as e:
			return ToolResult.fail(f"Invalid parameters for {name}: {e}")

		if inspect.iscoroutinefunction(handler):
			result = await handler(**params)
		else:
			# Sync handlers run in a worker thread; a timeout abandons the thread, it is not interrupted
			result = await asyncio.to_thread(handler, **params)
		if inspect.isawaitable(result):
			result = await result
		if isinstance(result, ToolResult):
			return result
		return ToolResult.ok(result)
