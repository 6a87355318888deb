"""
Project Analyzer - Build a ProjectContext for planning prompts.

Uses filesystem heuristics only: a depth-limited structure scan, config
file detection, dependency extraction from manifests, and entry point
patterns. The result feeds the decomposer's prompts and its fallback
file guess.
"""

import asyncio
import json
import logging
import tomllib
from pathlib import Path
from typing import Optional

from ..tasks.models import ProjectContext

logger = logging.getLogger(__name__)

MAX_DEPTH = 3
MAX_STRUCTURE_ENTRIES = 400
MAX_SOURCE_FILES = 100

_IGNORED_DIRS = {"node_modules", ".git", ".next", "dist", "build", "__pycache__", ".venv", "venv"}

_CONFIG_FILES: list[str] = [
	"package.json",
	"tsconfig.json",
	"next.config.js",
	"next.config.mjs",
	"tailwind.config.js",
	"vite.config.ts",
	"pyproject.toml",
	"requirements.txt",
	"Cargo.toml",
	"go.mod",
	"README.md",
]

_ENTRY_POINT_PATTERNS: list[str] = [
	"app/page.tsx",
	"app/layout.tsx",
	"pages/index.tsx",
	"pages/index.js",
	"src/main.tsx",
	"src/index.tsx",
	"src/index.js",
	"index.js",
	"index.ts",
	"main.py",
	"app.py",
	"cli.py",
	"__main__.py",
	"server.py",
	"src/main.rs",
	"main.go",
]

_SOURCE_EXTENSIONS: dict[str, str] = {
	".py": "python",
	".ts": "typescript",
	".tsx": "typescript",
	".js": "javascript",
	".jsx": "javascript",
	".mjs": "javascript",
	".rs": "rust",
	".go": "go",
	".java": "java",
	".rb": "ruby",
	".css": "css",
	".html": "html",
}

# Dependency name -> framework label, checked in order
_FRAMEWORKS: list[tuple[str, str]] = [
	("next", "Next.js"),
	("nuxt", "Nuxt"),
	("@angular/core", "Angular"),
	("svelte", "Svelte"),
	("vue", "Vue"),
	("react", "React"),
	("express", "Express"),
	("django", "Django"),
	("fastapi", "FastAPI"),
	("flask", "Flask"),
	("starlette", "Starlette"),
]


class ProjectAnalyzer:
	"""Analyzes a project directory into a ProjectContext."""

	def __init__(self, max_depth: int = MAX_DEPTH):
		self.max_depth = max_depth

	async def analyze(self, root: Path) -> ProjectContext:
		"""Analyze ``root`` off the event loop."""
		return await asyncio.to_thread(self.analyze_sync, root)

	def analyze_sync(self, root: Path) -> ProjectContext:
		"""
		Analyze a project directory.

		Raises:
			FileNotFoundError: If root is not a directory
		"""
		project_path = Path(root).expanduser().resolve()
		if not project_path.is_dir():
			raise FileNotFoundError(f"Not a directory: {root}")

		structure = self._scan(project_path)
		files = [p for p in structure if not p.endswith("/")]

		config_files = [name for name in _CONFIG_FILES if (project_path / name).is_file()]
		entry_points = [p for p in _ENTRY_POINT_PATTERNS if (project_path / p).is_file()]
		source_files = [p for p in files if Path(p).suffix in _SOURCE_EXTENSIONS]

		key_files: list[str] = []
		for p in entry_points + source_files[:MAX_SOURCE_FILES] + config_files:
			if p not in key_files:
				key_files.append(p)

		dependencies = self._read_dependencies(project_path)
		framework = self._detect_framework(dependencies)
		language = self._detect_language(source_files)

		context = ProjectContext(
			root=str(project_path),
			name=self._project_name(project_path),
			framework=framework,
			language=language,
			key_files=key_files,
			entry_points=entry_points,
			dependencies=dependencies,
			structure=structure,
			summary=self._summarize(project_path, framework, language, files),
		)
		logger.info(
			f"Analyzed project {context.name}: {framework}/{language}, "
			f"{len(files)} files, {len(key_files)} key files"
		)
		return context

	def _scan(self, root: Path) -> list[str]:
		"""Relative paths to MAX_DEPTH; directories end with '/'."""
		entries: list[str] = []

		def walk(directory: Path, depth: int):
			if depth >= self.max_depth or len(entries) >= MAX_STRUCTURE_ENTRIES:
				return
			try:
				children = sorted(directory.iterdir(), key=lambda p: (p.is_file(), p.name))
			except OSError as e:
				logger.debug(f"Skipping unreadable directory {directory}: {e}")
				return
			for child in children:
				if child.name in _IGNORED_DIRS:
					continue
				if len(entries) >= MAX_STRUCTURE_ENTRIES:
					return
				rel = child.relative_to(root).as_posix()
				if child.is_dir():
					entries.append(f"{rel}/")
					walk(child, depth + 1)
				else:
					entries.append(rel)

		walk(root, 0)
		return entries

	def _read_dependencies(self, root: Path) -> list[str]:
		deps: list[str] = []

		package_json = root / "package.json"
		if package_json.is_file():
			try:
				data = json.loads(package_json.read_text(encoding="utf-8"))
				for key in ("dependencies", "devDependencies"):
					deps.extend(data.get(key, {}).keys())
			except (json.JSONDecodeError, OSError, AttributeError) as e:
				logger.warning(f"Could not read package.json: {e}")

		pyproject = root / "pyproject.toml"
		if pyproject.is_file():
			try:
				with open(pyproject, "rb") as f:
					data = tomllib.load(f)
				for spec in data.get("project", {}).get("dependencies", []):
					deps.append(_requirement_name(spec))
			except (tomllib.TOMLDecodeError, OSError) as e:
				logger.warning(f"Could not read pyproject.toml: {e}")

		requirements = root / "requirements.txt"
		if requirements.is_file():
			for line in requirements.read_text(encoding="utf-8", errors="replace").splitlines():
				line = line.strip()
				if line and not line.startswith(("#", "-")):
					deps.append(_requirement_name(line))

		seen = set()
		return [d for d in deps if d and not (d in seen or seen.add(d))]

	def _detect_framework(self, dependencies: list[str]) -> str:
		lowered = {d.lower() for d in dependencies}
		for dep, label in _FRAMEWORKS:
			if dep in lowered:
				return label
		return "unknown"

	def _detect_language(self, source_files: list[str]) -> str:
		counts: dict[str, int] = {}
		for p in source_files:
			lang = _SOURCE_EXTENSIONS.get(Path(p).suffix)
			if lang and lang not in ("css", "html"):
				counts[lang] = counts.get(lang, 0) + 1
		if not counts:
			return "unknown"
		return max(counts, key=counts.get)

	def _project_name(self, root: Path) -> str:
		package_json = root / "package.json"
		if package_json.is_file():
			try:
				name = json.loads(package_json.read_text(encoding="utf-8")).get("name")
				if name:
					return name
			except (json.JSONDecodeError, OSError, AttributeError):
				pass
		return root.name

	def _summarize(self, root: Path, framework: str, language: str, files: list[str]) -> str:
		parts = [f"{framework} project" if framework != "unknown" else "Project"]
		if language != "unknown":
			parts.append(f"written mostly in {language}")
		parts.append(f"with {len(files)} files scanned")
		readme = root / "README.md"
		if readme.is_file():
			for line in readme.read_text(encoding="utf-8", errors="replace").splitlines():
				line = line.strip().lstrip("#").strip()
				if line:
					parts.append(f"({line[:120]})")
					break
		return " ".join(parts)


def _requirement_name(spec: str) -> str:
	for sep in ("[", "=", "<", ">", "~", "!", ";", " "):
		spec = spec.split(sep, 1)[0]
	return spec.strip()


async def analyze_project(root: Path, analyzer: Optional[ProjectAnalyzer] = None) -> ProjectContext:
	"""Analyze a project, degrading to a minimal context on failure."""
	analyzer = analyzer or ProjectAnalyzer()
	try:
		return await analyzer.analyze(root)
	except Exception as e:
		logger.warning(f"Project analysis failed for {root}: {e}")
		return ProjectContext(root=str(root), name=Path(root).name)
