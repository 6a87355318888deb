"""Tests for the CLI-backed planner oracle."""

import stat
from pathlib import Path

import pytest

from agent_orchestrator.oracle import ClaudeCLIOracle, OracleError


def _script(tmp_path: Path, body: str) -> str:
	path = tmp_path / "fake-claude"
	path.write_text(f"#!/bin/sh\n{body}\n")
	path.chmod(path.stat().st_mode | stat.S_IEXEC)
	return str(path)


class TestClaudeCLIOracle:
	@pytest.mark.asyncio
	async def test_prompt_goes_to_stdin(self, tmp_path: Path):
		oracle = ClaudeCLIOracle(command=_script(tmp_path, "cat"), timeout=5)
		assert await oracle.generate("# Plan Overview Tasks") == "# Plan Overview Tasks"

	@pytest.mark.asyncio
	async def test_nonzero_exit_raises(self, tmp_path: Path):
		oracle = ClaudeCLIOracle(command=_script(tmp_path, "echo rate limited >&2; exit 2"), timeout=5)
		with pytest.raises(OracleError) as exc_info:
			await oracle.generate("x")
		assert "code 2" in str(exc_info.value)
		assert "rate limited" in str(exc_info.value)

	@pytest.mark.asyncio
	async def test_missing_command_raises(self, tmp_path: Path):
		oracle = ClaudeCLIOracle(command=str(tmp_path / "does-not-exist"))
		with pytest.raises(OracleError):
			await oracle.generate("x")

	@pytest.mark.asyncio
	async def test_timeout_raises(self, tmp_path: Path):
		oracle = ClaudeCLIOracle(command=_script(tmp_path, "exec sleep 5"), timeout=0.2)
		with pytest.raises(OracleError) as exc_info:
			await oracle.generate("x")
		assert "timed out" in str(exc_info.value)
