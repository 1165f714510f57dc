"""submit_review: explicit completion signal for the main analysis.

Some models answer with a planning message ("I will now review X")
and no tool calls.  Requiring this tool call keeps such a message from
being taken as the final review.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from revu.tools.base import Tool, ToolResult, tool_success

if TYPE_CHECKING:
    from revu.agent.models import ConversationState, ExecutionContext, ModelResponse

SUBMIT_REVIEW = "submit_review"

_CODE_BLOCK_RE = re.compile(
    r'```(?:json)?\s*\n?\s*\{[\s\S]*?"review_content"\s*:\s*"([\s\S]*?)"\s*\}[\s\S]*?```'
)
_RAW_JSON_RE = re.compile(r'\{\s*"review_content"\s*:\s*"((?:[^"\\]|\\.)*)"\s*\}')
_JSON_OBJECT_RE = re.compile(r'\{[\s\S]*?"review_content"[\s\S]*?\}')


class SubmitReviewArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    review_content: str = Field(
        min_length=20,
        description=(
            "The complete markdown-formatted review in the output format from the "
            "system prompt. Must include summary section, findings by category, "
            "and recommendations."
        ),
    )


class SubmitReviewTool(Tool):
    name = SUBMIT_REVIEW
    description = (
        "Submit your final PR review. Call this as the FINAL step when all analysis "
        "is complete. The review content should follow the output format with "
        "summary, findings, and recommendations."
    )
    Args = SubmitReviewArgs

    async def execute(self, args: SubmitReviewArgs, context: ExecutionContext) -> ToolResult:
        return tool_success(args.review_content, {"is_completion": True})


def review_submitted(state: ConversationState, response: ModelResponse) -> bool:
    """Default completion predicate for the main analysis."""
    if SUBMIT_REVIEW in state.tool_names_called():
        return True
    return extract_review_from_malformed_call(response.content) is not None


def extract_review_from_malformed_call(content: str | None) -> str | None:
    """Recover review_content from a submit_review call written out as text."""
    if not content:
        return None

    match = _CODE_BLOCK_RE.search(content)
    if match:
        return _unescape(match.group(1))

    match = _RAW_JSON_RE.search(content)
    if match:
        return _unescape(match.group(1))

    match = _JSON_OBJECT_RE.search(content)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            return _recover_truncated(match.group(0))
        if isinstance(parsed, dict) and isinstance(parsed.get("review_content"), str):
            return parsed["review_content"]
    return None


def _recover_truncated(text: str) -> str | None:
    match = re.search(r'"review_content"\s*:\s*"([\s\S]*)', text)
    if not match:
        return None
    value = match.group(1)
    escaped = False
    for i, char in enumerate(value):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            return _unescape(value[:i]) if i > 0 else None
    return None


def _unescape(value: str) -> str:
    return (
        value.replace("\\n", "\n")
        .replace("\\r", "\r")
        .replace("\\t", "\t")
        .replace('\\"', '"')
        .replace("\\\\", "\\")
    )
