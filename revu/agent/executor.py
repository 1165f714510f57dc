"""Tool registry and budgeted tool execution.

Provides:
- ToolRegistry: registers tools, looks them up, filters for subagents
- ToolExecutor: dispatches calls against a registry under a per-instance
  call budget, measures duration and converts tool failures to results
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable
from typing import Any

from revu.agent.models import ExecutionContext, ToolCallRecord
from revu.config import Settings
from revu.errors import error_message, is_cancellation
from revu.tools.base import Tool, ToolResult, tool_error

logger = logging.getLogger(__name__)


def rate_limit_message(current: int, maximum: int) -> str:
    return (
        f"Rate limit exceeded: {current} tool calls made, maximum {maximum} per "
        "analysis session. Please refine your analysis approach."
    )


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Name-keyed set of tools in registration order."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f'Tool with name "{tool.name}" is already registered')
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def filtered(self, excluded: Iterable[str]) -> ToolRegistry:
        """New registry without the excluded tool names."""
        skip = set(excluded)
        return ToolRegistry(t for name, t in self._tools.items() if name not in skip)

    def specs(self) -> list[dict[str, Any]]:
        """All tool definitions in Anthropic API format."""
        return [tool.definition() for tool in self._tools.values()]


# ---------------------------------------------------------------------------
# ToolExecutor
# ---------------------------------------------------------------------------


class ToolExecutor:
    """Executes tools from one registry under a call budget.

    The budget is per instance: every analysis and every subagent builds
    its own executor.  The ceiling is read from settings on each call.
    """

    def __init__(self, registry: ToolRegistry, settings: Settings) -> None:
        self._registry = registry
        self._settings = settings
        self._call_count = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def call_count(self) -> int:
        return self._call_count

    @property
    def max_calls(self) -> int:
        return self._settings.max_tool_calls

    @property
    def remaining_calls(self) -> int:
        return max(0, self.max_calls - self._call_count)

    def reset(self) -> None:
        self._call_count = 0

    async def execute_tool(
        self,
        name: str,
        args: dict[str, Any],
        context: ExecutionContext,
        call_id: str | None = None,
    ) -> ToolResult:
        """Run one tool call. Only cancellation escapes as an exception."""
        call_id = call_id or f"call_{uuid.uuid4().hex[:8]}"

        tool = self._registry.get(name)
        if tool is None:
            result = tool_error(f"Tool '{name}' not found in registry")
            self._record(context, call_id, name, args, result, None)
            return result

        if self._call_count >= self.max_calls:
            logger.warning(
                "[%s] Tool call budget exhausted (%d/%d), rejecting %s",
                context.label,
                self._call_count,
                self.max_calls,
                name,
            )
            result = tool_error(rate_limit_message(self._call_count, self.max_calls))
            self._record(context, call_id, name, args, result, None)
            return result

        context.token.raise_if_cancelled()
        # Incremented before the await so concurrent callers see the reservation
        self._call_count += 1

        start = time.monotonic()
        try:
            result = await tool.run(args, context)
        except Exception as e:
            if is_cancellation(e):
                raise
            logger.exception("[%s] Tool %s failed", context.label, name)
            result = tool_error(error_message(e))
        duration_ms = int((time.monotonic() - start) * 1000)

        if result.success:
            result.metadata.setdefault("duration_ms", duration_ms)
        logger.debug(
            "[%s] Tool %s finished in %dms (success=%s)",
            context.label,
            name,
            duration_ms,
            result.success,
        )
        self._record(context, call_id, name, args, result, duration_ms)
        return result

    @staticmethod
    def _record(
        context: ExecutionContext,
        call_id: str,
        name: str,
        args: dict[str, Any],
        result: ToolResult,
        duration_ms: int | None,
    ) -> None:
        if context.nested_calls is None:
            return
        context.nested_calls.append(
            ToolCallRecord(
                id=call_id,
                tool_name=name,
                arguments=dict(args),
                result=result.text,
                success=result.success,
                error=result.error,
                duration_ms=duration_ms,
                nested_calls=result.metadata.get("nested_tool_calls"),
            )
        )
