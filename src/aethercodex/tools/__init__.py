from aethercodex.tools.executor import BatchOutcome, ToolExecutor
from aethercodex.tools.protocol import ToolCall, extract_arguments, extract_from_content, extract_name
from aethercodex.tools.registry import ToolDefinition, ToolRegistry
from aethercodex.tools.sandbox import ExecutionSandbox

__all__ = [
    "BatchOutcome",
    "ExecutionSandbox",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "extract_arguments",
    "extract_from_content",
    "extract_name",
]
