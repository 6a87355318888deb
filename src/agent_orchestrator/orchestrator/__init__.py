"""Orchestrator module - Project analysis, decomposition, execution, and progress."""

from .analyzer import ProjectAnalyzer, analyze_project
from .decomposer import (
	Decomposer,
	Malformed,
	OracleMalformedOutput,
	Parsed,
	parse_oracle_output,
)
from .engine import (
	Orchestrator,
	RunAlreadyActiveError,
	create_orchestrator,
	get_orchestrator,
)
from .executor import ExecutionResult, Executor, FailureKind, is_non_retryable
from .progress import ObserverHub, ProgressBroadcaster

__all__ = [
	"ProjectAnalyzer",
	"analyze_project",
	"Decomposer",
	"Parsed",
	"Malformed",
	"OracleMalformedOutput",
	"parse_oracle_output",
	"Orchestrator",
	"RunAlreadyActiveError",
	"create_orchestrator",
	"get_orchestrator",
	"Executor",
	"ExecutionResult",
	"FailureKind",
	"is_non_retryable",
	"ObserverHub",
	"ProgressBroadcaster",
]
