"""Model-callable tools."""

from revu.tools.base import Tool, ToolResult, tool_error, tool_success
from revu.tools.review import SubmitReviewTool
from revu.tools.subagent import RunSubagentTool

__all__ = [
    "RunSubagentTool",
    "SubmitReviewTool",
    "Tool",
    "ToolResult",
    "tool_error",
    "tool_success",
]
