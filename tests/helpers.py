"""Shared test fixtures and helpers for agent-orchestrator tests."""

import json
from pathlib import Path
from typing import Callable, Optional, Union

from agent_orchestrator.operations.registry import ToolRegistry, ToolResult
from agent_orchestrator.orchestrator.decomposer import Decomposer
from agent_orchestrator.orchestrator.engine import Orchestrator
from agent_orchestrator.orchestrator.executor import Executor
from agent_orchestrator.tasks.store import TaskStore

Reply = Union[str, Exception, Callable[[str], str]]


class FakeOracle:
	"""
	Scripted PlannerOracle.

	Prompts starting with "# Plan Overview Tasks" get the overview reply;
	subtask prompts are answered from ``subtask_replies`` in order, with
	``default_subtask_reply`` once the list runs out.
	"""

	def __init__(
		self,
		overview: Reply,
		subtask_replies: Optional[list[Reply]] = None,
		default_subtask_reply: Optional[Reply] = None,
	):
		self.overview = overview
		self.subtask_replies = list(subtask_replies or [])
		self.default_subtask_reply = default_subtask_reply
		self.prompts: list[str] = []

	async def generate(self, prompt: str) -> str:
		self.prompts.append(prompt)
		if prompt.startswith("# Plan Overview Tasks"):
			reply = self.overview
		elif self.subtask_replies:
			reply = self.subtask_replies.pop(0)
		else:
			reply = self.default_subtask_reply
		if reply is None:
			raise AssertionError("FakeOracle has no reply left")
		if isinstance(reply, Exception):
			raise reply
		if callable(reply):
			return reply(prompt)
		return reply


def overview_json(*descriptions: str) -> str:
	return json.dumps([{"text": d, "tool": "write_file"} for d in descriptions])


def subtasks_json(*entries: tuple[str, dict, str]) -> str:
	return json.dumps([
		{"tool": tool, "parameters": params, "explanation": explanation}
		for tool, params, explanation in entries
	])


class RecordingTools:
	"""Registry of scripted tool handlers that records every call."""

	def __init__(self):
		self.registry = ToolRegistry()
		self.calls: list[tuple[str, dict]] = []

	def add(self, name: str, outcomes: Optional[list] = None) -> None:
		"""
		Register ``name``. Each call consumes the next outcome: a ToolResult,
		an Exception to raise, or any other value as successful output.
		Once outcomes run out every call succeeds.
		"""
		queue = list(outcomes or [])

		async def handler(**params):
			self.calls.append((name, params))
			outcome = queue.pop(0) if queue else ToolResult.ok(f"{name} ok")
			if isinstance(outcome, Exception):
				raise outcome
			return outcome

		self.registry.register(name, handler, f"Test operation {name}", {"path": "File path"})

	def names_called(self) -> list[str]:
		return [name for name, _ in self.calls]


async def no_sleep(delay: float) -> None:
	return None


def make_orchestrator(
	store: TaskStore,
	oracle: FakeOracle,
	registry: ToolRegistry,
	project_root: Path,
	max_attempts: int = 3,
	sleep=no_sleep,
) -> Orchestrator:
	"""Build an Orchestrator with test doubles and no backoff delay."""
	decomposer = Decomposer(oracle, max_subtasks=3, timeout=5)
	executor = Executor(registry, max_attempts=max_attempts, backoff_base=0.01, sleep=sleep)
	return Orchestrator(store, decomposer, executor, registry, project_root)


def make_project(root: Path) -> Path:
	"""Create a small Next.js-style project tree."""
	(root / "app" / "contact").mkdir(parents=True, exist_ok=True)
	(root / "components").mkdir(exist_ok=True)
	(root / "package.json").write_text(json.dumps({
		"name": "landing-page",
		"dependencies": {"next": "14.0.0", "react": "18.2.0"},
		"devDependencies": {"typescript": "5.0.0"},
	}))
	(root / "README.md").write_text("# Landing Page\n\nA property landing page.\n")
	(root / "app" / "layout.tsx").write_text("export default function RootLayout() {}\n")
	(root / "app" / "page.tsx").write_text("export default function Home() {}\n")
	(root / "app" / "contact" / "page.tsx").write_text("export default function Contact() {}\n")
	(root / "components" / "ContactForm.tsx").write_text("export function ContactForm() {}\n")
	return root
