"""Core health check tool."""

import json

from mcp.server.fastmcp import FastMCP

from ..config import Config


def register_core_tools(mcp: FastMCP, config: Config) -> None:
	"""Register core tools."""

	@mcp.tool()
	async def health_check() -> str:
		"""
		Check the health of the agent-orchestrator server.
		Returns paths and tunables in effect.
		"""
		status = {
			"server": "running",
			"config_dir": str(config.config_dir),
			"data_dir": str(config.data_dir),
			"db_exists": config.db_path.exists(),
			"project_root": str(config.project_root),
			"project_root_exists": config.project_root.is_dir(),
			"oracle_command": config.oracle_command,
			"max_subtasks": config.max_subtasks,
			"max_attempts": config.max_attempts,
		}
		return json.dumps(status, indent=2)
