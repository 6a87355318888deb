"""CLI for agent-orchestrator: run, show, serve, and web commands."""

import argparse
import asyncio
import sys
import uuid
from pathlib import Path

from .config import get_config
from .logging_config import setup_logging


async def _run(args: argparse.Namespace) -> int:
	from rich.console import Console
	from rich.markup import escape

	from .orchestrator.engine import RunAlreadyActiveError, create_orchestrator
	from .tasks.models import ProgressEvent
	from .tasks.store import TaskStore
	from .visualizer.run_progress import render_run_result

	config = get_config()
	if args.project:
		config.project_root = Path(args.project).expanduser().resolve()

	console = Console()
	store = TaskStore(str(config.db_path))
	await store.init()
	try:
		orchestrator = create_orchestrator(store, config=config)
		chat_id = args.chat or str(uuid.uuid4())

		def on_event(event: ProgressEvent) -> None:
			if event.current_thought:
				p = event.progress
				console.print(f"[dim][{p.completed}/{p.total}][/dim] {escape(event.current_thought)}")

		if not args.quiet:
			orchestrator.on_progress(chat_id, on_event)

		try:
			result = await orchestrator.start_run(args.request, chat_id)
		except RunAlreadyActiveError as e:
			console.print(f"[red]{e}[/red]")
			return 1

		await orchestrator.hub.drain()
		render_run_result(result, console=console)
		return 0 if result.success else 1
	finally:
		await store.close()


def cmd_run(args: argparse.Namespace) -> None:
	"""Execute a request against the project and print progress."""
	setup_logging(level=args.log_level)
	sys.exit(asyncio.run(_run(args)))


async def _show(args: argparse.Namespace) -> int:
	from rich.console import Console

	from .tasks.store import TaskStore
	from .visualizer.run_progress import render_chat_list, render_snapshot, render_task_tree

	config = get_config()
	console = Console()
	store = TaskStore(str(config.db_path))
	await store.init()
	try:
		if not args.chat_id:
			render_chat_list(await store.list_chats(include_deleted=args.all), console=console)
			return 0

		chat = await store.get_chat(args.chat_id)
		if not chat:
			console.print(f"[red]Chat not found: {args.chat_id}[/red]")
			return 1

		if args.snapshot:
			message = await store.latest_snapshot(chat.id)
			if not message:
				console.print("No snapshot recorded for this chat.")
				return 0
			render_snapshot(message.payload, console=console)
			return 0

		tasks = await store.get_overview_tasks(chat.id, args.run or None)
		render_task_tree(tasks, title=chat.name, console=console)
		return 0
	finally:
		await store.close()


def cmd_show(args: argparse.Namespace) -> None:
	"""Show chats, or the tasks of one chat."""
	sys.exit(asyncio.run(_show(args)))


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	setup_logging(level=args.log_level)
	from .server import mcp
	mcp.run()


def cmd_web(args: argparse.Namespace) -> None:
	"""Launch the HTTP API."""
	try:
		from .web import run_web_server
	except ImportError:
		print("Web extras not installed.")
		print("Install with: pip install -e '.[web]'")
		sys.exit(1)

	setup_logging(level=args.log_level)
	run_web_server(host=args.host, port=args.port)


def main() -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="agent-orchestrator",
		description="Plan and execute coding requests as tracked tasks and subtasks",
	)
	parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ERROR")
	subparsers = parser.add_subparsers(dest="command")

	# run
	run_parser = subparsers.add_parser("run", help="Execute a request")
	run_parser.add_argument("request", help="What to build or change")
	run_parser.add_argument("--chat", type=str, default=None, help="Continue an existing chat")
	run_parser.add_argument("--project", type=str, default=None, help="Project root (default: config)")
	run_parser.add_argument("--quiet", action="store_true", help="Only print the final result")
	run_parser.set_defaults(func=cmd_run)

	# show
	show_parser = subparsers.add_parser("show", help="Show chats or a chat's tasks")
	show_parser.add_argument("chat_id", nargs="?", default=None, help="Chat ID (default: list chats)")
	show_parser.add_argument("--run", type=str, default=None, help="Only tasks from this run")
	show_parser.add_argument("--snapshot", action="store_true", help="Show the latest live snapshot")
	show_parser.add_argument("--all", action="store_true", help="Include deleted chats")
	show_parser.set_defaults(func=cmd_show)

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	# web
	web_parser = subparsers.add_parser("web", help="Run the HTTP API")
	web_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
	web_parser.add_argument("--port", type=int, default=8420, help="Server port (default: 8420)")
	web_parser.set_defaults(func=cmd_web)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	args.func(args)


if __name__ == "__main__":
	main()
