"""Tool registry, executor and built-in decision tools."""

from .builtin import (
    BUILTIN_TOOL_SPECS,
    AnalysisEngine,
    GraphDrafter,
    GraphEditor,
    build_default_registry,
    detect_constraint_tension,
    explain_analysis,
)
from .executor import ExecutorConfig, ToolExecution, ToolExecutor
from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistration, ToolRegistry
from .types import SimpleTool, Tool, ToolContext, ToolHandler, ToolOutcome, ToolSpec

__all__ = [
    # types
    "SimpleTool",
    "Tool",
    "ToolContext",
    "ToolHandler",
    "ToolOutcome",
    "ToolSpec",
    # registry
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolRegistration",
    "ToolRegistry",
    # executor
    "ExecutorConfig",
    "ToolExecution",
    "ToolExecutor",
    # built-ins
    "AnalysisEngine",
    "BUILTIN_TOOL_SPECS",
    "GraphDrafter",
    "GraphEditor",
    "build_default_registry",
    "detect_constraint_tension",
    "explain_analysis",
]
