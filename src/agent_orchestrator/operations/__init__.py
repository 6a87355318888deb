"""Operations module - Tool registry and built-in project file operations."""

from .files import ProjectFiles, create_default_registry, register_file_operations
from .registry import OperationSpec, ToolRegistry, ToolResult, UnknownOperationError

__all__ = [
	"OperationSpec",
	"ProjectFiles",
	"ToolRegistry",
	"ToolResult",
	"UnknownOperationError",
	"create_default_registry",
	"register_file_operations",
]
