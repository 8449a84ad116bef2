from task_agent.tools.gateway import ToolExecutor, format_validation_error
from task_agent.tools.registry import TOOL_REGISTRY, ToolSpec, build_registry, list_tools
from task_agent.tools.schemas import ApprovalMaps, ToolCall, ToolDef, ToolError, ToolExecResult

__all__ = [
    "TOOL_REGISTRY",
    "ApprovalMaps",
    "ToolCall",
    "ToolDef",
    "ToolError",
    "ToolExecResult",
    "ToolExecutor",
    "ToolSpec",
    "build_registry",
    "list_tools",
    "format_validation_error",
]
