"""
Built-in file operations, confined to a project root.

Every path is resolved against the root; anything that escapes it fails
with "permission denied". Missing files fail with "not found". Both
messages are recognised by the executor as non-retryable.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from .registry import ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

IGNORED_DIRS = {"node_modules", ".git", ".next", "dist", "build", "__pycache__", ".venv"}
MAX_SEARCH_RESULTS = 50
MAX_READ_BYTES = 1024 * 1024


class ProjectFiles:
	"""File operations rooted at one project directory."""

	def __init__(self, root: Path):
		self.root = Path(root).resolve()

	def _resolve(self, path: str) -> Optional[Path]:
		candidate = (self.root / (path or ".")).resolve()
		if candidate != self.root and self.root not in candidate.parents:
			return None
		return candidate

	def list_files(self, path: str = ".") -> ToolResult:
		"""List the entries of a directory."""
		target = self._resolve(path)
		if target is None:
			return ToolResult.fail(f"Permission denied: {path} is outside the project")
		if not target.is_dir():
			return ToolResult.fail(f"Directory not found: {path}")

		entries = []
		for child in sorted(target.iterdir()):
			if child.name in IGNORED_DIRS:
				continue
			rel = child.relative_to(self.root).as_posix()
			entries.append(f"{rel}/" if child.is_dir() else rel)
		return ToolResult.ok(entries)

	def read_file(self, path: str) -> ToolResult:
		"""Read a UTF-8 text file."""
		target = self._resolve(path)
		if target is None:
			return ToolResult.fail(f"Permission denied: {path} is outside the project")
		if not target.is_file():
			return ToolResult.fail(f"File not found: {path}")
		if target.stat().st_size > MAX_READ_BYTES:
			return ToolResult.fail(f"Invalid parameters: {path} is larger than {MAX_READ_BYTES} bytes")
		return ToolResult.ok(target.read_text(encoding="utf-8", errors="replace"))

	def write_file(self, path: str, content: str) -> ToolResult:
		"""Write a file, creating parent directories as needed."""
		target = self._resolve(path)
		if target is None:
			return ToolResult.fail(f"Permission denied: {path} is outside the project")
		if target.is_dir():
			return ToolResult.fail(f"Invalid parameters: {path} is a directory")
		target.parent.mkdir(parents=True, exist_ok=True)
		target.write_text(content, encoding="utf-8")
		logger.debug(f"Wrote {len(content)} chars to {path}")
		return ToolResult.ok(f"Wrote {path}")

	def create_file(self, path: str, content: str = "") -> ToolResult:
		"""Create a new file; fails if it already exists."""
		target = self._resolve(path)
		if target is None:
			return ToolResult.fail(f"Permission denied: {path} is outside the project")
		if target.exists():
			return ToolResult.fail(f"Invalid parameters: {path} already exists")
		return self.write_file(path, content)

	def append_file(self, path: str, content: str) -> ToolResult:
		"""Append to an existing file."""
		target = self._resolve(path)
		if target is None:
			return ToolResult.fail(f"Permission denied: {path} is outside the project")
		if not target.is_file():
			return ToolResult.fail(f"File not found: {path}")
		with open(target, "a", encoding="utf-8") as f:
			f.write(content)
		return ToolResult.ok(f"Appended to {path}")

	def delete_file(self, path: str) -> ToolResult:
		"""Delete a file. Directories are never removed."""
		target = self._resolve(path)
		if target is None or target == self.root:
			return ToolResult.fail(f"Permission denied: {path}")
		if not target.is_file():
			return ToolResult.fail(f"File not found: {path}")
		target.unlink()
		return ToolResult.ok(f"Deleted {path}")

	def search_code(self, query: str, path: str = ".", regex: bool = False) -> ToolResult:
		"""Search text files for a string or regex; returns path:line matches."""
		target = self._resolve(path)
		if target is None:
			return ToolResult.fail(f"Permission denied: {path} is outside the project")
		if not target.exists():
			return ToolResult.fail(f"Directory not found: {path}")
		try:
			pattern = re.compile(query if regex else re.escape(query), re.IGNORECASE)
		except re.error as e:
			return ToolResult.fail(f"Invalid parameters: bad pattern {query!r}: {e}")

		matches = []
		for file_path in self._walk(target):
			try:
				lines = file_path.read_text(encoding="utf-8").splitlines()
			except (UnicodeDecodeError, OSError):
				continue
			for lineno, line in enumerate(lines, start=1):
				if pattern.search(line):
					rel = file_path.relative_to(self.root).as_posix()
					matches.append(f"{rel}:{lineno}: {line.strip()}")
					if len(matches) >= MAX_SEARCH_RESULTS:
						return ToolResult.ok(matches)
		return ToolResult.ok(matches)

	def _walk(self, start: Path):
		if start.is_file():
			yield start
			return
		for dirpath, dirnames, filenames in os.walk(start):
			dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
			for name in sorted(filenames):
				yield Path(dirpath) / name


PATH_PARAM = {"path": "Path relative to the project root"}
CONTENT_PARAM = {"content": "Full text content"}


def register_file_operations(registry: ToolRegistry, root: Path) -> ProjectFiles:
	"""Register the built-in file operations on ``registry``."""
	files = ProjectFiles(root)
	registry.register(
		"list_files", files.list_files,
		"List files and directories under a path",
		{"path": "Directory relative to the project root (default '.')"},
	)
	registry.register("read_file", files.read_file, "Read a text file", PATH_PARAM)
	registry.register(
		"write_file", files.write_file,
		"Create or overwrite a file with the given content",
		{**PATH_PARAM, **CONTENT_PARAM},
	)
	registry.register(
		"create_file", files.create_file,
		"Create a new file; fails if it exists",
		{**PATH_PARAM, **CONTENT_PARAM},
	)
	registry.register(
		"append_file", files.append_file,
		"Append content to an existing file",
		{**PATH_PARAM, "content": "Text to append"},
	)
	registry.register("delete_file", files.delete_file, "Delete a file", PATH_PARAM)
	registry.register(
		"search_code", files.search_code,
		"Search project files for text",
		{
			"query": "Text (or regex when regex=true) to search for",
			"path": "Directory to search (default '.')",
			"regex": "Treat query as a regular expression (default false)",
		},
	)
	return files


def create_default_registry(root: Optional[Path] = None) -> ToolRegistry:
	"""Build a registry with the file operations rooted at ``root``."""
	if root is None:
		from ..config import get_config
		root = get_config().project_root
	registry = ToolRegistry()
	register_file_operations(registry, root)
	return registry
