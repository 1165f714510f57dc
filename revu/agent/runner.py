"""Conversation runner -- drives one tool-calling loop.

Shared by the main analysis and by subagents.  Each run sends the
history to the model, executes any requested tools in order, feeds the
results back and repeats until the model answers without tools (and, if
required, has signalled completion), the iteration ceiling is reached or
the token fires.

States: IDLE -> RUNNING -> {AWAITING_TOOLS -> RUNNING}* ->
COMPLETED | MAX_ITERATIONS | CANCELLED | TIMED_OUT | FAILED
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from revu.agent.client import ModelClient
from revu.agent.executor import ToolExecutor
from revu.agent.models import (
    ConversationState,
    ExecutionContext,
    ModelResponse,
    ProgressCallback,
    RunResult,
    ToolCall,
    ToolCallRecord,
)
from revu.cancellation import CancellationToken
from revu.errors import FatalModelError, RunOutcome, error_message, is_cancellation
from revu.tokens import constants
from revu.tokens.validator import ContextAction, TokenValidator
from revu.tools.base import ToolResult
from revu.tools.review import review_submitted

logger = logging.getLogger(__name__)

CompletionPredicate = Callable[[ConversationState, ModelResponse], bool]

NUDGE_MESSAGE = (
    "You have not submitted your review yet. Continue the investigation with "
    "tools if needed, then call submit_review with the complete review."
)
EMPTY_COMPLETION = "Conversation completed but no content returned."

# Share of a progress bar the loop iterations account for
_PROGRESS_SPAN = 80.0


class RunnerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_TOOLS = "awaiting_tools"
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class RunnerConfig:
    system_prompt: str
    max_iterations: int
    label: str = "Conversation"
    # None -> every tool in the executor's registry; [] disables tools
    tools: list[dict[str, Any]] | None = None
    requires_explicit_completion: bool = False
    completion_predicate: CompletionPredicate = review_submitted
    nudge_message: str = NUDGE_MESSAGE


class ToolCallHandler:
    """Callbacks for tool-call side effects. Override what you need."""

    def on_iteration_start(self, current: int, maximum: int) -> None:
        pass

    def on_tool_call_start(self, tool_name: str, index: int, total: int) -> None:
        pass

    def on_tool_call_complete(self, record: ToolCallRecord, result: ToolResult) -> None:
        pass

    def context_status_suffix(self) -> str:
        return ""


class ConversationRunner:
    """Runs one conversation against a model client and a tool executor."""

    def __init__(
        self,
        client: ModelClient,
        executor: ToolExecutor,
        context: ExecutionContext,
        validator: TokenValidator | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self._context = context
        self._validator = validator
        self._progress = progress
        self._state = RunnerState.IDLE
        self._tool_calls_made = 0

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def tool_calls_made(self) -> int:
        return self._tool_calls_made

    async def run(
        self,
        config: RunnerConfig,
        conversation: ConversationState,
        token: CancellationToken,
        handler: ToolCallHandler | None = None,
    ) -> RunResult:
        """Loop until completion, ceiling or cancellation.

        FatalModelError propagates.  CancellationError raised during setup
        propagates; once the loop runs, cancellation becomes a CANCELLED
        (or TIMED_OUT) result carrying any partial text.
        """
        handler = handler or ToolCallHandler()
        prefix = f"[{config.label}]"
        self._tool_calls_made = 0
        self._state = RunnerState.RUNNING

        if token.is_cancelled:
            logger.info("%s Cancelled before first model call", prefix)
            return self._finish_cancelled(token, "")

        try:
            tools = self._executor.registry.specs() if config.tools is None else config.tools
            conversation.max_iterations = config.max_iterations
            conversation.iteration = 0
        except Exception as e:
            if is_cancellation(e):
                raise
            logger.exception("%s Setup failed", prefix)
            self._state = RunnerState.FAILED
            return RunResult(RunOutcome.FAILED, "", 0, error=error_message(e))

        while conversation.iteration < conversation.max_iterations:
            conversation.iteration += 1
            iteration = conversation.iteration
            self._context.iteration = iteration
            logger.info("%s Iteration %d/%d", prefix, iteration, conversation.max_iterations)

            if token.is_cancelled:
                logger.info("%s Cancelled before iteration %d", prefix, iteration)
                return self._finish_cancelled(token, conversation.assistant_text())

            handler.on_iteration_start(iteration, conversation.max_iterations)
            self._report(
                f"{config.label}: iteration {iteration}/{conversation.max_iterations}",
                _PROGRESS_SPAN / conversation.max_iterations,
            )

            try:
                self._fit_context(config.system_prompt, conversation, prefix)
                response = await token.race(
                    self._client.send_request(
                        config.system_prompt, conversation.history(), tools, token
                    )
                )
            except FatalModelError:
                logger.error("%s Fatal model error in iteration %d", prefix, iteration)
                self._state = RunnerState.FAILED
                raise
            except Exception as e:
                if is_cancellation(e) or token.is_cancelled:
                    logger.info("%s Cancelled during iteration %d", prefix, iteration)
                    return self._finish_cancelled(token, conversation.assistant_text())
                message = f"{prefix} Error in iteration {iteration}: {error_message(e)}"
                logger.error(message)
                conversation.add_assistant(
                    f"I encountered an error: {message}. Let me try to continue.",
                    runtime_note=True,
                )
                continue

            if token.is_cancelled:
                logger.info("%s Cancelled by user", prefix)
                return self._finish_cancelled(token, conversation.assistant_text())

            conversation.add_assistant(response.content, response.tool_calls)

            if response.tool_calls:
                self._state = RunnerState.AWAITING_TOOLS
                try:
                    completion = await self._handle_tool_calls(
                        response.tool_calls, conversation, handler, prefix
                    )
                except Exception as e:
                    if is_cancellation(e):
                        logger.info("%s Cancelled during tool execution", prefix)
                        return self._finish_cancelled(token, conversation.assistant_text())
                    raise
                self._state = RunnerState.RUNNING
                if completion is not None:
                    logger.info("%s Completed via completion tool", prefix)
                    return self._finish_completed(conversation, completion)
                continue

            if config.requires_explicit_completion and not config.completion_predicate(
                conversation, response
            ):
                logger.info("%s Response lacks explicit completion, nudging", prefix)
                conversation.add_user(config.nudge_message)
                continue

            logger.info("%s Completed successfully", prefix)
            return self._finish_completed(conversation, response.content or EMPTY_COMPLETION)

        logger.warning("%s Reached maximum iterations (%d)", prefix, conversation.max_iterations)
        self._state = RunnerState.MAX_ITERATIONS
        return RunResult(
            RunOutcome.MAX_ITERATIONS,
            conversation.assistant_text(),
            self._tool_calls_made,
            error=RunOutcome.MAX_ITERATIONS.value,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fit_context(self, system_prompt: str, conversation: ConversationState, prefix: str) -> None:
        if self._validator is None:
            return
        validation = self._validator.validate(conversation.messages, system_prompt)
        if validation.action == ContextAction.REQUEST_FINAL_ANSWER:
            logger.warning(
                "%s Context window full (%d/%d tokens), requesting final answer",
                prefix,
                validation.total_tokens,
                validation.max_tokens,
            )
            conversation.add_user(constants.FINAL_ANSWER_REQUEST)
        elif validation.action == ContextAction.REMOVE_OLD_CONTEXT:
            cleanup = self._validator.cleanup(conversation.messages, system_prompt)
            conversation.replace_history(cleanup.messages)
            if cleanup.context_full_message_added:
                logger.info(
                    "%s Context cleanup: removed %d tool results and %d assistant messages",
                    prefix,
                    cleanup.tool_results_removed,
                    cleanup.assistant_messages_removed,
                )

    async def _handle_tool_calls(
        self,
        calls: list[ToolCall],
        conversation: ConversationState,
        handler: ToolCallHandler,
        prefix: str,
    ) -> str | None:
        """Execute calls in order; return review text if a completion tool succeeded."""
        logger.info(
            "%s Executing %d tool(s): %s", prefix, len(calls), ", ".join(c.name for c in calls)
        )
        for index, call in enumerate(calls):
            handler.on_tool_call_start(call.name, index, len(calls))

        completion: str | None = None
        for index, call in enumerate(calls):
            try:
                args = call.parse_arguments()
            except ValueError:
                logger.error(
                    "%s Failed to parse args for %s: %s", prefix, call.name, call.arguments_json
                )
                args = {}

            call_id = call.id or f"tool_call_{index}"
            self._report(f"Running {call.name}", 0.0)
            start = time.monotonic()
            result = await self._executor.execute_tool(call.name, args, self._context, call_id)
            duration_ms = int((time.monotonic() - start) * 1000)
            self._tool_calls_made += 1

            content = result.text
            if self._validator is not None and not self._validator.is_response_size_acceptable(content):
                logger.warning("%s Tool %s response too large (%d chars)", prefix, call.name, len(content))
                content = constants.RESPONSE_TOO_LARGE

            record = ToolCallRecord(
                id=call_id,
                tool_name=call.name,
                arguments=args,
                result=content,
                success=result.success,
                error=result.error,
                duration_ms=duration_ms,
                nested_calls=result.metadata.get("nested_tool_calls"),
            )
            handler.on_tool_call_complete(record, result)
            conversation.add_tool_result(call_id, content + handler.context_status_suffix())

            if result.success and result.metadata.get("is_completion"):
                completion = result.data or ""
        return completion

    def _finish_completed(self, conversation: ConversationState, text: str) -> RunResult:
        conversation.completed = True
        self._state = RunnerState.COMPLETED
        return RunResult(RunOutcome.COMPLETED, text, self._tool_calls_made)

    def _finish_cancelled(self, token: CancellationToken, partial: str) -> RunResult:
        outcome = RunOutcome.TIMED_OUT if token.timed_out else RunOutcome.CANCELLED
        self._state = RunnerState(outcome.value)
        return RunResult(outcome, partial, self._tool_calls_made, error=outcome.value)

    def _report(self, message: str, increment: float) -> None:
        if self._progress is None:
            return
        try:
            self._progress(message, increment)
        except Exception:
            logger.exception("Progress callback failed")
