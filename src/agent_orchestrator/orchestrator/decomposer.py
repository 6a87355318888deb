"""
Decomposer - Turn a user request into overview tasks and subtasks.

Oracle text crosses one boundary, ``parse_oracle_output()``, which yields
either ``Parsed`` data or ``Malformed`` with a reason. Everything after
that works on validated structures only.

Overview planning has no fallback: failure raises OracleMalformedOutput
and the run ends. Subtask planning always returns at least one subtask,
synthesizing a read-only fallback when the oracle output is unusable.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from ..operations.registry import OperationSpec
from ..oracle import PlannerOracle
from ..tasks.models import OverviewTask, ProjectContext, SubtaskSpec

logger = logging.getLogger(__name__)

OVERVIEW_KEYS = ("tasks", "overview_tasks", "todo")
FALLBACK_READ = "read_file"
FALLBACK_LIST = "list_files"

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)
_WORD_RE = re.compile(r"[a-z0-9]+")
_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")
_STOPWORDS = {
	"a", "an", "and", "the", "to", "of", "for", "in", "on", "with", "add", "update",
	"create", "make", "new", "file", "page", "into", "from", "that", "this", "it",
}


class OracleMalformedOutput(Exception):
	"""The oracle failed or returned text that does not validate."""

	def __init__(self, reason: str, raw_text: str = ""):
		super().__init__(reason)
		self.reason = reason
		self.raw_text = raw_text


@dataclass(frozen=True)
class Parsed:
	data: Any


@dataclass(frozen=True)
class Malformed:
	raw_text: str
	reason: str


OracleOutput = Union[Parsed, Malformed]


def parse_oracle_output(text: str) -> OracleOutput:
	"""
	Parse raw oracle text into JSON data.

	Tries, in order: the whole text, the contents of each fenced code
	block, then the first balanced JSON array or object found anywhere
	in the text.
	"""
	if text is None or not text.strip():
		return Malformed(raw_text=text or "", reason="empty response")

	stripped = text.strip()
	candidates = [stripped] + [m.group(1) for m in _FENCE_RE.finditer(stripped)]
	for candidate in candidates:
		try:
			return Parsed(json.loads(candidate))
		except json.JSONDecodeError:
			continue

	data = _first_json_value(stripped)
	if data is not None:
		return Parsed(data)
	return Malformed(raw_text=text, reason="no JSON array or object found")


def _first_json_value(text: str) -> Optional[Any]:
	decoder = json.JSONDecoder()
	for idx, char in enumerate(text):
		if char not in "[{":
			continue
		try:
			value, _ = decoder.raw_decode(text, idx)
		except json.JSONDecodeError:
			continue
		return value
	return None


def validate_overview(data: Any) -> list[str]:
	"""
	Validate parsed overview data into task descriptions.

	Raises:
		OracleMalformedOutput: If the shape is wrong or any entry lacks a description
	"""
	items = data
	if isinstance(data, dict):
		items = next((data[k] for k in OVERVIEW_KEYS if isinstance(data.get(k), list)), None)
	if not isinstance(items, list):
		raise OracleMalformedOutput("overview output is not a list of tasks")
	if not items:
		raise OracleMalformedOutput("overview output contains no tasks")

	descriptions = []
	for i, item in enumerate(items):
		if isinstance(item, str):
			text = item
		elif isinstance(item, dict):
			text = item.get("description") or item.get("text") or ""
		else:
			text = ""
		if not isinstance(text, str) or not text.strip():
			raise OracleMalformedOutput(f"overview task {i + 1} has no description")
		descriptions.append(text.strip())
	return descriptions


def validate_subtasks(data: Any, max_subtasks: int) -> list[SubtaskSpec]:
	"""
	Validate parsed subtask data.

	Entries beyond ``max_subtasks`` are dropped before validation; a single
	bad entry among the rest rejects the whole output.

	Raises:
		OracleMalformedOutput: If the shape is wrong or any entry is invalid
	"""
	items = data
	if isinstance(data, dict):
		items = data.get("subtasks")
	if not isinstance(items, list):
		raise OracleMalformedOutput("subtask output is not a list")
	if not items:
		raise OracleMalformedOutput("subtask output is empty")
	if len(items) > max_subtasks:
		logger.debug(f"Truncating {len(items)} subtasks to {max_subtasks}")
		items = items[:max_subtasks]

	specs = []
	for i, item in enumerate(items):
		if not isinstance(item, dict):
			raise OracleMalformedOutput(f"subtask {i + 1} is not an object")
		operation = item.get("tool") or item.get("operation")
		parameters = item.get("parameters")
		explanation = item.get("explanation")
		if not isinstance(operation, str) or not operation.strip():
			raise OracleMalformedOutput(f"subtask {i + 1} has no operation name")
		if not isinstance(parameters, dict):
			raise OracleMalformedOutput(f"subtask {i + 1} parameters must be an object")
		if not isinstance(explanation, str) or not explanation.strip():
			raise OracleMalformedOutput(f"subtask {i + 1} has no explanation")
		specs.append(SubtaskSpec(
			operation=operation.strip(),
			parameters=parameters,
			explanation=explanation.strip(),
		))
	return specs


def _keywords(text: str) -> set[str]:
	"""Lowercased words with camelCase split and a trailing plural 's' dropped."""
	text = _CAMEL_RE.sub(r"\1 \2", text).lower()
	words = set()
	for word in _WORD_RE.findall(text):
		if word in _STOPWORDS or len(word) < 2:
			continue
		if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
			word = word[:-1]
		words.add(word)
	return words


def guess_target_file(description: str, context: ProjectContext) -> Optional[str]:
	"""Best-guess key file for a task: highest keyword overlap, ties to the first entry point."""
	if not context.key_files:
		return None

	words = _keywords(description)

	def score(path: str) -> int:
		return len(words & _keywords(path))

	best = max(score(p) for p in context.key_files)
	tied = [p for p in context.key_files if score(p) == best]
	for entry in context.entry_points:
		if entry in tied:
			return entry
	return tied[0]


def fallback_subtasks(task: OverviewTask, context: ProjectContext) -> list[SubtaskSpec]:
	"""Single read-only subtask used when the oracle output is unusable."""
	target = guess_target_file(task.description, context)
	if target:
		return [SubtaskSpec(
			operation=FALLBACK_READ,
			parameters={"path": target},
			explanation=f"Inspect {target} for: {task.description}",
			fallback=True,
		)]
	return [SubtaskSpec(
		operation=FALLBACK_LIST,
		parameters={"path": "."},
		explanation=f"List the project root for: {task.description}",
		fallback=True,
	)]


def build_overview_prompt(user_input: str, context: ProjectContext) -> str:
	lines = [
		"# Plan Overview Tasks",
		"",
		"You are an expert project manager. Break the user request below into",
		"2-5 high-level overview tasks, in execution order.",
		"",
		"## User Request",
		user_input,
		"",
		"## Project",
		context.to_prompt(),
		"",
		"## Output Format",
		"",
		"Respond ONLY with a JSON array, no additional text:",
		"",
		"```json",
		"[",
		'  {"description": "Brief, specific description of the task"}',
		"]",
		"```",
	]
	return "\n".join(lines)


def build_subtask_prompt(
	user_input: str,
	context: ProjectContext,
	task: OverviewTask,
	catalogue: Sequence[OperationSpec],
	max_subtasks: int,
) -> str:
	lines = [
		"# Plan Subtasks",
		"",
		"You are an expert software developer. Break the overview task below into",
		f"at most {max_subtasks} concrete subtasks, each one call to an available operation.",
		"",
		"## User Request",
		user_input,
		"",
		"## Project",
		context.to_prompt(),
		"",
		"## Overview Task",
		task.description,
		"",
		"## Available Operations",
	]
	for spec in catalogue:
		entry = spec.to_dict()
		params = ", ".join(f'"{k}": {v}' for k, v in entry["parameters"].items())
		lines.append(f"- {entry['name']}: {entry['description']}. Parameters: {{{params}}}")
	lines.extend([
		"",
		"## Output Format",
		"",
		"Write complete, working file content; never placeholder text.",
		"Respond ONLY with a JSON array, no additional text:",
		"",
		"```json",
		"[",
		'  {"tool": "operation_name", "parameters": {"path": "..."}, "explanation": "What this does"}',
		"]",
		"```",
	])
	return "\n".join(lines)


class Decomposer:
	"""Plans overview tasks and subtasks through a PlannerOracle."""

	def __init__(self, oracle: PlannerOracle, max_subtasks: int = 3, timeout: Optional[float] = 120.0):
		self.oracle = oracle
		self.max_subtasks = max_subtasks
		self.timeout = timeout

	async def _ask(self, prompt: str) -> OracleOutput:
		try:
			text = await asyncio.wait_for(self.oracle.generate(prompt), timeout=self.timeout)
		except asyncio.TimeoutError:
			return Malformed(raw_text="", reason=f"oracle timed out after {self.timeout}s")
		except Exception as e:
			return Malformed(raw_text="", reason=f"oracle error: {e}")
		return parse_oracle_output(text)

	async def plan_overview_tasks(self, user_input: str, context: ProjectContext) -> list[str]:
		"""
		Plan the ordered overview tasks for a request.

		Raises:
			OracleMalformedOutput: On oracle failure or unusable output
		"""
		result = await self._ask(build_overview_prompt(user_input, context))
		if isinstance(result, Malformed):
			logger.error(f"Overview planning failed: {result.reason}")
			raise OracleMalformedOutput(result.reason, result.raw_text)

		descriptions = validate_overview(result.data)
		logger.info(f"Planned {len(descriptions)} overview tasks")
		return descriptions

	async def plan_subtasks(
		self,
		user_input: str,
		context: ProjectContext,
		task: OverviewTask,
		catalogue: Sequence[OperationSpec],
	) -> list[SubtaskSpec]:
		"""Plan subtasks for one overview task. Never returns an empty list."""
		prompt = build_subtask_prompt(user_input, context, task, catalogue, self.max_subtasks)
		result = await self._ask(prompt)
		try:
			if isinstance(result, Malformed):
				raise OracleMalformedOutput(result.reason, result.raw_text)
			specs = validate_subtasks(result.data, self.max_subtasks)
		except OracleMalformedOutput as e:
			logger.warning(f"Subtask planning failed for task {task.ordinal} ({e.reason}), using fallback")
			return fallback_subtasks(task, context)

		logger.info(f"Planned {len(specs)} subtasks for task {task.ordinal}")
		return specs
