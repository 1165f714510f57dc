"""run_subagent: spawn an isolated investigation from the main analysis."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

from revu.agent.models import SubagentResult, SubagentTask
from revu.errors import CancellationError, RunOutcome, SubagentLimitExceeded
from revu.tools.base import Tool, ToolResult, tool_error, tool_success

if TYPE_CHECKING:
    from revu.agent.models import ExecutionContext

logger = logging.getLogger(__name__)

RUN_SUBAGENT = "run_subagent"
MIN_TASK_LENGTH = 30


class RunSubagentArgs(BaseModel):
    task: str = Field(
        description=(
            "Detailed investigation task. Include: 1) WHAT to investigate, "
            "2) WHERE to look (files, directories, symbols), 3) WHAT to return."
        ),
    )
    context: str | None = Field(
        None,
        description=(
            "Relevant context from your current analysis: code snippets, file paths, "
            "findings, or symbol names."
        ),
    )

    @field_validator("task")
    @classmethod
    def _task_long_enough(cls, v: str) -> str:
        if len(v.strip()) < MIN_TASK_LENGTH:
            raise ValueError(
                f"Task too brief ({MIN_TASK_LENGTH}+ chars needed). Include: WHAT to "
                "investigate, WHERE to look, WHAT to return."
            )
        return v


class RunSubagentTool(Tool):
    name = RUN_SUBAGENT
    description = (
        "Spawn a focused investigation agent for complex analysis.\n"
        "Template: \"Task about [module/file]: Questions: 1. How does [function] work? "
        "2. Does [function] handle [concern]? Examine: [function names]\"\n"
        "Rules: ONE module per subagent; questions about CURRENT code only; the "
        "subagent cannot run tests or execute code. Use it for 4+ files, security "
        "code, or dependency chains across 3+ files."
    )
    Args = RunSubagentArgs

    async def execute(self, args: RunSubagentArgs, context: ExecutionContext) -> ToolResult:
        manager = context.session_manager
        executor = context.subagent_executor
        if manager is None or executor is None:
            return tool_error("Subagents are not available in this context")

        if not manager.can_spawn():
            logger.warning(
                "Subagent spawn rejected: session limit reached (%d)", manager.max_per_session
            )
            return tool_error(str(SubagentLimitExceeded(manager.max_per_session)))

        subagent_id = manager.record_spawn()
        logger.info(
            "Subagent #%d spawned (%d/%d, %d remaining)",
            subagent_id,
            manager.get_count(),
            manager.max_per_session,
            manager.get_remaining_budget(),
        )

        result = await executor.execute(
            SubagentTask(task=args.task, context=args.context),
            context.token,
            subagent_id,
            parent=context,
        )

        nested = {"nested_tool_calls": result.tool_calls}
        if result.outcome == RunOutcome.CANCELLED:
            # The whole analysis is going down; let the runner see it
            if context.token.is_cancelled:
                raise CancellationError(timed_out=context.token.timed_out)
            return tool_error("Subagent was cancelled", nested)
        if result.outcome in (RunOutcome.TIMED_OUT, RunOutcome.FAILED):
            if result.outcome == RunOutcome.TIMED_OUT:
                message = (
                    f"Subagent timed out after {executor.timeout_seconds}s. "
                    "Break into smaller, more focused tasks."
                )
            else:
                message = f"Subagent failed: {result.error}"
            if result.response:
                message = f"{message}\n\n{format_subagent_result(result, subagent_id)}"
            return tool_error(message, nested)

        return tool_success(format_subagent_result(result, subagent_id), nested)


def format_subagent_result(result: SubagentResult, subagent_id: int) -> str:
    """Raw subagent response with minimal metadata for the parent model."""
    if result.success:
        return (
            f"## Subagent #{subagent_id} Investigation Complete\n\n"
            f"**Tool calls made:** {result.tool_calls_made}\n\n"
            f"---\n\n{result.response}"
        )
    findings = result.response or "No findings were produced."
    return (
        f"## Subagent #{subagent_id} Investigation Incomplete ({result.error})\n\n"
        f"**Tool calls made:** {result.tool_calls_made}\n\n"
        f"---\n\n{findings}"
    )
