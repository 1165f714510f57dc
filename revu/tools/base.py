"""Tool contract for model-callable capabilities.

A tool declares its arguments as a pydantic model.  The JSON schema sent
to the model is generated from that model and incoming arguments are
validated against it before execute() runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from revu.agent.models import ExecutionContext

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    success: bool
    data: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Content fed back to the model."""
        if self.success:
            return self.data or ""
        return f"Error: {self.error or 'Unknown error'}"


def tool_success(data: str, metadata: dict[str, Any] | None = None) -> ToolResult:
    return ToolResult(success=True, data=data, metadata=dict(metadata or {}))


def tool_error(error: str, metadata: dict[str, Any] | None = None) -> ToolResult:
    return ToolResult(success=False, error=error, metadata=dict(metadata or {}))


def format_validation_error(exc: ValidationError) -> str:
    return ", ".join(err["msg"] for err in exc.errors())


class Tool:
    """Base class for tools registered with a ToolRegistry.

    Subclasses set name, description and Args, and implement execute().
    """

    name: ClassVar[str]
    description: ClassVar[str]
    Args: ClassVar[type[BaseModel]]

    def definition(self) -> dict[str, Any]:
        """Tool definition in Anthropic API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.Args.model_json_schema(),
        }

    async def run(self, raw_args: dict[str, Any], context: ExecutionContext) -> ToolResult:
        """Validate raw_args and execute."""
        try:
            args = self.Args.model_validate(raw_args)
        except ValidationError as e:
            logger.warning("Invalid arguments for %s: %s", self.name, e)
            return tool_error(format_validation_error(e))
        return await self.execute(args, context)

    async def execute(self, args: Any, context: ExecutionContext) -> ToolResult:
        raise NotImplementedError
