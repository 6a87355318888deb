"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

APP_NAME = "agent-orchestrator"
APP_AUTHOR = "agent-orchestrator"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Project the operations act on
	project_root: Path = field(
		default_factory=lambda: Path(os.getenv("PROJECT_ROOT", str(Path.cwd())))
	)

	# Decomposition
	max_subtasks: int = 3
	oracle_command: str = "claude"
	oracle_timeout: float = 120.0

	# Execution
	max_attempts: int = 3
	backoff_base: float = 1.0
	backoff_max: float = 8.0
	tool_timeout: float = 120.0

	def __post_init__(self) -> None:
		self.db_path = self.data_dir / "orchestrator.db"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {"config_dir", "data_dir", "project_root"}
INT_FIELDS = {"max_subtasks", "max_attempts"}
FLOAT_FIELDS = {"oracle_timeout", "backoff_base", "backoff_max", "tool_timeout"}


def _coerce(key: str, val: object) -> object:
	if key in PATH_FIELDS:
		return Path(os.path.expanduser(str(val)))
	if key in INT_FIELDS:
		return int(val)
	if key in FLOAT_FIELDS:
		return float(val)
	return val


def _apply_env_overrides(config: Config) -> Config:
	"""Apply AGENT_ORCHESTRATOR_* environment variable overrides."""
	env_map = {
		"AGENT_ORCHESTRATOR_CONFIG_DIR": "config_dir",
		"AGENT_ORCHESTRATOR_DATA_DIR": "data_dir",
		"AGENT_ORCHESTRATOR_PROJECT_ROOT": "project_root",
		"AGENT_ORCHESTRATOR_MAX_SUBTASKS": "max_subtasks",
		"AGENT_ORCHESTRATOR_MAX_ATTEMPTS": "max_attempts",
		"AGENT_ORCHESTRATOR_BACKOFF_BASE": "backoff_base",
		"AGENT_ORCHESTRATOR_BACKOFF_MAX": "backoff_max",
		"AGENT_ORCHESTRATOR_TOOL_TIMEOUT": "tool_timeout",
		"AGENT_ORCHESTRATOR_ORACLE_TIMEOUT": "oracle_timeout",
		"AGENT_ORCHESTRATOR_ORACLE_COMMAND": "oracle_command",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, _coerce(attr, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if hasattr(config, key) and key not in {"db_path", "log_dir"}:
			setattr(config, key, _coerce(key, val))

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_env_overrides(config)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
