"""
Executor - Run one subtask through the tool registry with bounded retries.

Failures are classified: an unknown operation or a permanent error ends
execution immediately, anything else is retried with exponential backoff
until ``max_attempts`` is reached.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..operations.registry import ToolRegistry, ToolResult, UnknownOperationError
from ..tasks.models import Subtask, SubtaskSpec

logger = logging.getLogger(__name__)

NON_RETRYABLE_MARKERS = (
	"unknown tool",
	"not found",
	"permission denied",
	"invalid parameters",
	"syntax error",
)


class FailureKind(str, Enum):
	UNKNOWN_OPERATION = "unknown_operation"
	PERMANENT = "permanent"
	TRANSIENT = "transient"


@dataclass
class ExecutionResult:
	success: bool
	output: Any = None
	error: Optional[str] = None
	attempts: int = 0
	failure_kind: Optional[FailureKind] = None

	def to_payload(self) -> dict:
		"""Result payload stored on the subtask."""
		payload: dict[str, Any] = {"attempts": self.attempts}
		if self.success:
			payload["output"] = self.output
		else:
			payload["error"] = self.error
			payload["failure_kind"] = self.failure_kind.value if self.failure_kind else None
		return payload


def is_non_retryable(error: Optional[str]) -> bool:
	"""True if the error message carries a permanent-failure marker."""
	if not error:
		return False
	lowered = error.lower()
	return any(marker in lowered for marker in NON_RETRYABLE_MARKERS)


class Executor:
	"""Executes subtasks against a ToolRegistry."""

	def __init__(
		self,
		registry: ToolRegistry,
		max_attempts: int = 3,
		backoff_base: float = 1.0,
		backoff_max: float = 8.0,
		tool_timeout: Optional[float] = 120.0,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	):
		self.registry = registry
		self.max_attempts = max(1, max_attempts)
		self.backoff_base = backoff_base
		self.backoff_max = backoff_max
		self.tool_timeout = tool_timeout
		self._sleep = sleep

	def backoff_delay(self, attempt: int) -> float:
		"""Delay after failed attempt number ``attempt`` (1-based)."""
		return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

	async def _attempt(self, name: str, params: dict) -> ToolResult:
		try:
			return await asyncio.wait_for(self.registry.invoke(name, params), timeout=self.tool_timeout)
		except UnknownOperationError:
			raise
		except asyncio.TimeoutError:
			return ToolResult.fail(f"Timed out after {self.tool_timeout}s")
		except Exception as e:
			return ToolResult.fail(f"{type(e).__name__}: {e}")

	async def execute(self, subtask: Subtask | SubtaskSpec) -> ExecutionResult:
		"""Execute a subtask, retrying transient failures."""
		name = subtask.operation
		params = dict(subtask.parameters)

		if not self.registry.has(name):
			logger.warning(f"Unknown operation '{name}'")
			return ExecutionResult(
				success=False,
				error=str(UnknownOperationError(name)),
				attempts=0,
				failure_kind=FailureKind.UNKNOWN_OPERATION,
			)

		error: Optional[str] = None
		for attempt in range(1, self.max_attempts + 1):
			try:
				result = await self._attempt(name, params)
			except UnknownOperationError as e:
				# Deregistered between lookup and invoke
				return ExecutionResult(
					success=False,
					error=str(e),
					attempts=attempt - 1,
					failure_kind=FailureKind.UNKNOWN_OPERATION,
				)

			if result.success:
				logger.info(f"{name} succeeded on attempt {attempt}/{self.max_attempts}")
				return ExecutionResult(success=True, output=result.output, attempts=attempt)

			error = result.error or "operation failed without an error message"
			logger.warning(f"{name} attempt {attempt}/{self.max_attempts} failed: {error}")

			if is_non_retryable(error):
				return ExecutionResult(
					success=False,
					error=error,
					attempts=attempt,
					failure_kind=FailureKind.PERMANENT,
				)

			if attempt < self.max_attempts:
				delay = self.backoff_delay(attempt)
				logger.debug(f"Retrying {name} in {delay}s")
				await self._sleep(delay)

		return ExecutionResult(
			success=False,
			error=error,
			attempts=self.max_attempts,
			failure_kind=FailureKind.TRANSIENT,
		)
