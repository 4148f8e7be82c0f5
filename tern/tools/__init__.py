"""Tools module -- capability-tagged tool registry and built-in tools.

Public API:
    ToolRegistry          - register/execute with validation, permissions, stats
    register_builtin_tools - read, write, list, shell
"""

from tern.tools.builtin import register_builtin_tools
from tern.tools.registry import (
    ConfirmationRequest,
    Confirmer,
    ParamType,
    SecurityLevel,
    ToolContext,
    ToolDefinition,
    ToolOutcome,
    ToolOutput,
    ToolParameter,
    ToolRegistry,
    ToolStats,
)

__all__ = [
    "ConfirmationRequest",
    "Confirmer",
    "ParamType",
    "SecurityLevel",
    "ToolContext",
    "ToolDefinition",
    "ToolOutcome",
    "ToolOutput",
    "ToolParameter",
    "ToolRegistry",
    "ToolStats",
    "register_builtin_tools",
]
