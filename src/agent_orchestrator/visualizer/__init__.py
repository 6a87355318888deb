"""Visualizer package - Rich terminal views for run progress."""

from .run_progress import render_chat_list, render_run_result, render_snapshot, render_task_tree

__all__ = [
	"render_chat_list",
	"render_run_result",
	"render_snapshot",
	"render_task_tree",
]
