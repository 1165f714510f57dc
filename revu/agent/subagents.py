"""Subagent orchestration -- isolated, budget-capped sub-investigations.

SubagentSessionManager holds the spawn budget for one top-level analysis
and fans cancellation out to every running child.  SubagentExecutor runs
one investigation with its own conversation, filtered tool registry,
tool-call budget and timeout.
"""

from __future__ import annotations

import logging
import time

from revu.agent.client import ModelClient
from revu.agent.executor import ToolExecutor, ToolRegistry
from revu.agent.models import (
    ConversationState,
    ExecutionContext,
    RunResult,
    SubagentResult,
    SubagentTask,
    ToolCallRecord,
)
from revu.agent.prompts import subagent_system_prompt
from revu.agent.runner import ConversationRunner, RunnerConfig
from revu.cancellation import CancellationSource, CancellationToken, Disposer
from revu.config import Settings
from revu.errors import (
    FatalModelError,
    RunOutcome,
    SubagentLimitExceeded,
    error_message,
    is_cancellation,
)
from revu.tokens.validator import TokenValidator

logger = logging.getLogger(__name__)

# Recursive spawning, plan tracking and completion markers stay with the main analysis
DISALLOWED_TOOLS = frozenset({"run_subagent", "submit_review", "update_plan"})


# ---------------------------------------------------------------------------
# SubagentSessionManager
# ---------------------------------------------------------------------------


class SubagentSessionManager:
    """Spawn budget and child cancellation registry for one analysis.

    Counter mutations are synchronous; two spawn requests can only
    interleave at await points.
    """

    def __init__(self, settings: Settings, token: CancellationToken | None = None) -> None:
        self._settings = settings
        self._count = 0
        self._children: list[CancellationSource] = []
        self._cancelled = False
        self._unlink: Disposer | None = None
        if token is not None:
            self._unlink = token.on_cancelled(self.cancel_all)

    @property
    def max_per_session(self) -> int:
        return self._settings.max_subagents_per_session

    @property
    def active_children(self) -> int:
        return len(self._children)

    def can_spawn(self) -> bool:
        return self._count < self.max_per_session

    def record_spawn(self) -> int:
        """Reserve a spawn slot and return its id (1, 2, ...)."""
        if not self.can_spawn():
            raise SubagentLimitExceeded(self.max_per_session)
        self._count += 1
        return self._count

    def get_count(self) -> int:
        return self._count

    def get_remaining_budget(self) -> int:
        return max(0, self.max_per_session - self._count)

    def reset(self) -> None:
        self._count = 0

    def register_child(self, source: CancellationSource) -> Disposer:
        """Cancel source when the session is cancelled. Returns an unregister callable."""
        if self._cancelled:
            source.cancel()
            return _noop
        self._children.append(source)

        def _unregister() -> None:
            if source in self._children:
                self._children.remove(source)

        return _unregister

    def cancel_all(self) -> None:
        self._cancelled = True
        children, self._children = self._children, []
        if children:
            logger.info("Cancelling %d running subagent(s)", len(children))
        for source in children:
            source.cancel()

    def dispose(self) -> None:
        if self._unlink is not None:
            self._unlink()
            self._unlink = None
        self._children.clear()


# ---------------------------------------------------------------------------
# SubagentExecutor
# ---------------------------------------------------------------------------


def _noop() -> None:
    pass


def _short_label(task: str, limit: int = 50) -> str:
    text = " ".join(task.split())
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


class SubagentExecutor:
    """Runs one isolated investigation per execute() call."""

    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        settings: Settings,
        validator: TokenValidator | None = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._settings = settings
        self._validator = validator

    @property
    def timeout_seconds(self) -> int:
        return self._settings.request_timeout_seconds

    async def execute(
        self,
        task: SubagentTask,
        token: CancellationToken,
        subagent_id: int,
        parent: ExecutionContext | None = None,
    ) -> SubagentResult:
        """Run the investigation to a tagged SubagentResult.

        Cancellation raised during setup is re-raised so callers can tell
        "never ran" from "ran and was cancelled".  FatalModelError also
        propagates.
        """
        label = f"Subagent #{subagent_id}"
        timeout = self.timeout_seconds
        started = time.monotonic()
        logger.info("[%s] Starting: %r", label, _short_label(task.task))

        source = CancellationSource(parent=token)
        unregister: Disposer = _noop
        try:
            token.raise_if_cancelled()
            if parent is not None and parent.session_manager is not None:
                unregister = parent.session_manager.register_child(source)

            registry = self._registry.filtered(DISALLOWED_TOOLS)
            executor = ToolExecutor(registry, self._settings)
            if parent is not None:
                context = parent.child(label, source.token)
            else:
                context = ExecutionContext(label=label, token=source.token, nested_calls=[])
            max_iterations = task.max_iterations or self._settings.effective_subagent_iterations
            system_prompt = subagent_system_prompt(
                task, registry.tools(), self._settings.max_tool_calls
            )
            conversation = ConversationState(max_iterations=max_iterations)
            conversation.add_user(f"Please investigate: {task.task}")
            runner = ConversationRunner(self._client, executor, context, self._validator)
        except Exception as e:
            source.dispose()
            unregister()
            if is_cancellation(e):
                raise
            logger.exception("[%s] Setup failed", label)
            return SubagentResult(
                success=False,
                response="",
                tool_calls_made=0,
                error=error_message(e),
                outcome=RunOutcome.FAILED,
            )

        source.cancel_after(timeout)
        try:
            result = await runner.run(
                RunnerConfig(system_prompt=system_prompt, max_iterations=max_iterations, label=label),
                conversation,
                source.token,
            )
        except FatalModelError:
            raise
        except Exception as e:
            calls = list(context.nested_calls or [])
            if is_cancellation(e):
                outcome = RunOutcome.TIMED_OUT if source.timed_out else RunOutcome.CANCELLED
                logger.info("[%s] %s", label, outcome.value)
                return SubagentResult(False, "", len(calls), calls, outcome.value, outcome)
            logger.exception("[%s] Failed", label)
            return SubagentResult(
                False, "", len(calls), calls, error_message(e), RunOutcome.FAILED
            )
        finally:
            source.dispose()
            unregister()

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "[%s] Finished (%s) in %dms with %d tool calls",
            label,
            result.outcome.value,
            duration_ms,
            result.tool_calls_made,
        )
        return self._to_subagent_result(result, list(context.nested_calls or []))

    @staticmethod
    def _to_subagent_result(result: RunResult, calls: list[ToolCallRecord]) -> SubagentResult:
        if result.outcome == RunOutcome.COMPLETED:
            return SubagentResult(True, result.response, result.tool_calls_made, calls)
        if result.outcome == RunOutcome.CANCELLED:
            return SubagentResult(
                False, "", result.tool_calls_made, calls, RunOutcome.CANCELLED.value, result.outcome
            )
        # MAX_ITERATIONS and TIMED_OUT keep whatever the subagent found
        return SubagentResult(
            False,
            result.response,
            result.tool_calls_made,
            calls,
            result.error or result.outcome.value,
            result.outcome,
        )
