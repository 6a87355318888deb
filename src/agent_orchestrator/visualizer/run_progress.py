"""Rich views for run progress visualization."""

from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from ..tasks.models import Chat, OverviewTask, Progress, ProgressEvent, RunResult, RunState

STATUS_ICONS = {
	"pending": r"[dim]\[ ][/dim]",
	"active": r"[yellow]\[~][/yellow]",
	"done": r"[green]\[x][/green]",
	"failed": r"[red]\[!][/red]",
	"skipped": r"[dim]\[-][/dim]",
}

STATE_STYLES = {
	RunState.PLANNING: "cyan",
	RunState.PER_TASK_LOOP: "yellow",
	RunState.COMPLETED: "green",
	RunState.COMPLETED_WITH_ERRORS: "red",
	RunState.FAILED: "red",
	RunState.CANCELLED: "dim",
}


def _icon(status) -> str:
	return STATUS_ICONS.get(getattr(status, "value", status), r"\[ ]")


def render_task_tree(
	tasks: list[OverviewTask],
	title: str = "Tasks",
	console: Optional[Console] = None,
) -> None:
	"""Render overview tasks and their subtasks as a Rich Tree."""
	console = console or Console()
	progress = Progress.from_tasks(tasks)

	tree = Tree(
		f"[bold]{title}[/bold]  "
		f"[dim]({progress.completed}/{progress.total} tasks, {progress.percent}%)[/dim]"
	)
	for task in tasks:
		label = f"{_icon(task.status)} [bold]{task.ordinal}.[/bold] {escape(task.description)}"
		if task.failure_reason:
			label += f" [red]({task.failure_reason.value})[/red]"
		branch = tree.add(label)
		for subtask in task.subtasks:
			sub_label = f"{_icon(subtask.status)} {subtask.operation} [dim]- {escape(subtask.explanation)}[/dim]"
			if subtask.fallback:
				sub_label += " [magenta](fallback)[/magenta]"
			if subtask.result and subtask.result.get("error"):
				sub_label += f"\n    [red]{escape(str(subtask.result['error']))}[/red]"
			branch.add(sub_label)

	console.print(tree)


def render_snapshot(snapshot: dict[str, Any], console: Optional[Console] = None) -> None:
	"""Render a persisted progress snapshot payload."""
	console = console or Console()
	event = ProgressEvent.model_validate(snapshot)
	style = STATE_STYLES.get(event.state, "white")
	console.print(f"[{style}]{event.state.value}[/{style}] [dim]{escape(event.current_thought)}[/dim]")
	render_task_tree(event.tasks, title=f"Run {event.run_id[:8]}", console=console)


def render_run_result(result: RunResult, console: Optional[Console] = None) -> None:
	"""Render a summary panel for a finished run."""
	console = console or Console()
	style = STATE_STYLES.get(result.state, "white")

	lines = [
		f"[bold]Chat:[/bold] {result.chat_id}",
		f"[bold]Run:[/bold] {result.run_id}",
		f"[bold]State:[/bold] [{style}]{result.state.value}[/{style}]",
		f"[bold]Tasks:[/bold] {result.successful_tasks}/{result.total_tasks} succeeded, "
		f"{result.failed_tasks} failed",
		"",
		escape(result.summary),
	]
	if result.error:
		lines.append(f"[red]{escape(result.error)}[/red]")

	if result.tasks:
		render_task_tree(result.tasks, console=console)
	console.print(Panel("\n".join(lines), title="Run result", border_style=style))


def render_chat_list(chats: list[Chat], console: Optional[Console] = None) -> None:
	"""Render chats as a table."""
	console = console or Console()
	table = Table(title="Chats")
	table.add_column("ID", style="cyan", no_wrap=True)
	table.add_column("Name")
	table.add_column("Status")
	table.add_column("Messages", justify="right")
	table.add_column("Last message", style="dim")
	for chat in chats:
		table.add_row(
			chat.id,
			chat.name,
			chat.status.value,
			str(chat.message_count),
			chat.last_message_at[:19],
		)
	console.print(table)
