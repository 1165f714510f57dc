"""Shared data models for the agent runtime.

Kept separate from runner.py and subagents.py to avoid circular imports.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from revu.cancellation import CancellationToken, none_token
from revu.errors import RunOutcome

if TYPE_CHECKING:
    from revu.agent.subagents import SubagentExecutor, SubagentSessionManager

Role = Literal["system", "user", "assistant", "tool"]

# (message, increment_hint) -> None; fire-and-forget
ProgressCallback = Callable[[str, float], None]


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments_json: str = "{}"

    def parse_arguments(self) -> dict[str, Any]:
        """Decode arguments; raises ValueError on malformed or non-object JSON."""
        if not self.arguments_json:
            return {}
        args = json.loads(self.arguments_json)
        if not isinstance(args, dict):
            raise ValueError(f"Tool arguments must be a JSON object, got {type(args).__name__}")
        return args


@dataclass
class Message:
    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    # Set on notes the runner writes itself; never part of a user-facing answer
    runtime_note: bool = False


@dataclass
class ModelResponse:
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict[str, int] | None = None


@dataclass
class ConversationState:
    """Message history and loop counters for one ConversationRunner."""

    max_iterations: int
    messages: list[Message] = field(default_factory=list)
    iteration: int = 0
    completed: bool = False

    def add_user(self, content: str) -> None:
        self.messages.append(Message(role="user", content=content))

    def add_assistant(
        self,
        content: str | None,
        tool_calls: list[ToolCall] | None = None,
        runtime_note: bool = False,
    ) -> None:
        self.messages.append(
            Message(
                role="assistant",
                content=content,
                tool_calls=list(tool_calls) if tool_calls else None,
                runtime_note=runtime_note,
            )
        )

    def add_tool_result(self, tool_call_id: str, content: str) -> None:
        self.messages.append(Message(role="tool", content=content, tool_call_id=tool_call_id))

    def history(self) -> list[Message]:
        return [replace(m, tool_calls=list(m.tool_calls) if m.tool_calls else None) for m in self.messages]

    def replace_history(self, messages: list[Message]) -> None:
        self.messages = list(messages)

    def tool_names_called(self) -> set[str]:
        return {
            call.name
            for message in self.messages
            if message.tool_calls
            for call in message.tool_calls
        }

    def assistant_text(self) -> str:
        """Model-written assistant text so far, oldest first."""
        return "\n\n".join(
            m.content
            for m in self.messages
            if m.role == "assistant" and m.content and not m.runtime_note
        )


@dataclass
class ToolCallRecord:
    id: str
    tool_name: str
    arguments: dict[str, Any]
    result: str
    success: bool
    error: str | None = None
    duration_ms: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    nested_calls: list[ToolCallRecord] | None = None


@dataclass
class ToolCallsData:
    """Tool call history for one analysis session."""

    calls: list[ToolCallRecord] = field(default_factory=list)
    analysis_completed: bool = False
    analysis_error: str | None = None

    @property
    def total_calls(self) -> int:
        return len(self.calls)

    @property
    def successful_calls(self) -> int:
        return sum(1 for c in self.calls if c.success)

    @property
    def failed_calls(self) -> int:
        return sum(1 for c in self.calls if not c.success)


@dataclass
class ExecutionContext:
    """Per-analysis state handed to every tool execution.

    One instance per top-level analysis.  Subagents get a fresh context
    that shares the session manager but records its own nested calls.
    """

    label: str
    token: CancellationToken = field(default_factory=none_token)
    session_manager: SubagentSessionManager | None = None
    subagent_executor: SubagentExecutor | None = None
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    iteration: int = 0
    nested_calls: list[ToolCallRecord] | None = None

    def child(self, label: str, token: CancellationToken) -> ExecutionContext:
        """Context for a subagent: same session budget, no executor, own call sink."""
        return ExecutionContext(
            label=label,
            token=token,
            session_manager=self.session_manager,
            subagent_executor=None,
            trace_id=f"{self.trace_id}/{uuid.uuid4().hex[:6]}",
            nested_calls=[],
        )


@dataclass
class SubagentTask:
    task: str
    context: str | None = None
    max_iterations: int | None = None


@dataclass
class SubagentResult:
    success: bool
    response: str
    tool_calls_made: int
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    error: str | None = None
    outcome: RunOutcome = RunOutcome.COMPLETED


@dataclass
class RunResult:
    """Outcome of one ConversationRunner.run()."""

    outcome: RunOutcome
    response: str
    tool_calls_made: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == RunOutcome.COMPLETED

    @property
    def was_cancelled(self) -> bool:
        return self.outcome in (RunOutcome.CANCELLED, RunOutcome.TIMED_OUT)
