"""
Planner Oracle - text generation used to decompose requests.

The core only depends on the ``PlannerOracle`` protocol. ``ClaudeCLIOracle``
is the shipped implementation and shells out to the Claude CLI.
"""

import asyncio
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class OracleError(Exception):
	"""Raised when the oracle cannot produce a response."""
	pass


class PlannerOracle(Protocol):
	async def generate(self, prompt: str) -> str:
		...


class ClaudeCLIOracle:
	"""
	Oracle backed by ``claude --print``.

	The prompt is written to stdin and the response is read from stdout.
	"""

	def __init__(self, command: str = "claude", timeout: float = 120.0, cwd: Optional[str] = None):
		self.command = command
		self.timeout = timeout
		self.cwd = cwd

	async def generate(self, prompt: str) -> str:
		try:
			process = await asyncio.create_subprocess_exec(
				self.command,
				"--print",
				"--output-format", "text",
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				cwd=self.cwd,
			)
		except FileNotFoundError as e:
			raise OracleError(f"Oracle command not found: {self.command}") from e

		try:
			stdout, stderr = await asyncio.wait_for(
				process.communicate(input=prompt.encode()),
				timeout=self.timeout,
			)
		except asyncio.TimeoutError as e:
			process.kill()
			await process.wait()
			raise OracleError(f"Oracle timed out after {self.timeout}s") from e

		if process.returncode != 0:
			message = stderr.decode(errors="replace").strip()
			logger.error(f"Claude CLI error (exit {process.returncode}): {message}")
			raise OracleError(f"Oracle exited with code {process.returncode}: {message}")

		return stdout.decode(errors="replace")
