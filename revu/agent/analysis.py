"""Top-level review analysis: fit the prompt, run the main loop, collect calls.

One ToolCallingAnalysis can serve many analyze() calls; every call builds
its own session manager, tool executor, context and conversation so
concurrent analyses never share counters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from revu.agent.client import ModelClient
from revu.agent.executor import ToolExecutor, ToolRegistry
from revu.agent.models import (
    ConversationState,
    ExecutionContext,
    ProgressCallback,
    ToolCallRecord,
    ToolCallsData,
)
from revu.agent.prompts import review_system_prompt, review_user_prompt
from revu.agent.runner import ConversationRunner, RunnerConfig, ToolCallHandler
from revu.agent.subagents import SubagentExecutor, SubagentSessionManager
from revu.cancellation import CancellationToken, none_token
from revu.config import Settings
from revu.errors import FatalModelError, RunOutcome, error_message, is_cancellation
from revu.tokens import constants
from revu.tokens.calculator import TokenCalculator, TokenComponents
from revu.tokens.snippets import ContextSnippet, SnippetSelector, format_snippets, separate_by_type
from revu.tokens.truncator import WaterfallTruncator, changed_files
from revu.tokens.validator import TokenValidator
from revu.tools.base import Tool, ToolResult
from revu.tools.review import extract_review_from_malformed_call

logger = logging.getLogger(__name__)

MAIN_LABEL = "Main Analysis"
_CONTEXT_BUCKETS = ("embedding", "lsp-reference", "lsp-definition")


@dataclass
class PreparedPrompt:
    system_prompt: str
    user_message: str
    tools_enabled: bool
    was_truncated: bool = False


@dataclass
class AnalysisResult:
    analysis: str
    tool_calls: ToolCallsData = field(default_factory=ToolCallsData)
    outcome: RunOutcome = RunOutcome.COMPLETED


class _RecordingHandler(ToolCallHandler):
    """Collects ToolCallRecords and reports context usage to the model."""

    def __init__(
        self,
        records: list[ToolCallRecord],
        validator: TokenValidator,
        system_prompt: str,
        conversation: ConversationState,
    ) -> None:
        self._records = records
        self._validator = validator
        self._system_prompt = system_prompt
        self._conversation = conversation

    def on_tool_call_complete(self, record: ToolCallRecord, result: ToolResult) -> None:
        self._records.append(record)

    def context_status_suffix(self) -> str:
        validation = self._validator.validate(self._conversation.messages, self._system_prompt)
        used, limit = validation.total_tokens, validation.max_tokens
        percent = round(used / limit * 100) if limit else 0
        remaining = limit - used
        if percent >= 80:
            return (
                f"\n\n[Context: {percent}% used ({used}/{limit} tokens). "
                f"{remaining} remaining - consider wrapping up soon]"
            )
        if percent >= 50:
            return f"\n\n[Context: {percent}% used. {remaining} tokens remaining]"
        return ""


class ToolCallingAnalysis:
    """Runs a tool-calling review of one diff."""

    def __init__(
        self,
        client: ModelClient,
        tools: list[Tool],
        settings: Settings,
        calculator: TokenCalculator,
    ) -> None:
        self._client = client
        self._registry = ToolRegistry(tools)
        self._settings = settings
        self._calculator = calculator
        self._truncator = WaterfallTruncator(calculator, settings)
        self._selector = SnippetSelector(calculator, settings)
        self._validator = TokenValidator(calculator, settings)

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Prompt fitting
    # ------------------------------------------------------------------

    def prepare_prompt(self, diff_text: str, snippets: list[ContextSnippet]) -> PreparedPrompt:
        """Fit diff and snippets into the window, leaving room for tool round trips.

        Tools are disabled, and the diff fitted to the whole safe window,
        when the diff alone would not leave MIN_TOOL_SPACE_RATIO free.
        """
        limit = self._calculator.model_token_limit()
        tools = self._registry.tools()
        system_prompt = review_system_prompt(tools)

        tool_target = int(limit * (1 - constants.MIN_TOOL_SPACE_RATIO))
        prompt = self._fit(system_prompt, diff_text, snippets, tool_target)
        if not prompt.diff_cut:
            return PreparedPrompt(system_prompt, prompt.user_message, True, prompt.was_truncated)

        logger.warning(
            "Diff uses too much context for tool calling (window %d tokens). "
            "Truncating and disabling tools.",
            limit,
        )
        system_prompt = review_system_prompt([])
        prompt = self._fit(
            system_prompt,
            diff_text,
            snippets,
            int(limit * self._settings.safety_margin_ratio),
            notice=constants.TOOLS_DISABLED_NOTICE,
        )
        return PreparedPrompt(system_prompt, prompt.user_message, False, True)

    def _fit(
        self,
        system_prompt: str,
        diff_text: str,
        snippets: list[ContextSnippet],
        target: int,
        notice: str | None = None,
    ) -> _Fitted:
        files = changed_files(diff_text)
        frame = self._frame(files, notice)
        components = TokenComponents(system_prompt=system_prompt, user_messages=[frame])
        available = max(0, target - self._calculator.calculate_fixed_tokens(components))

        selection = self._selector.select(snippets, available)
        buckets = separate_by_type(selection.snippets)
        components = TokenComponents(
            system_prompt=system_prompt,
            diff_text=diff_text,
            embedding_context=buckets["embedding"],
            lsp_reference_context=buckets["lsp-reference"],
            lsp_definition_context=buckets["lsp-definition"],
            user_messages=[frame],
        )
        outcome = self._truncator.truncate(components, target)
        fitted = outcome.components

        context_text = "\n\n".join(
            part for part in (fitted.bucket(t) for t in _CONTEXT_BUCKETS) if part
        )
        if context_text and (selection.was_truncated or outcome.was_truncated):
            context_text += constants.CONTEXT_TRUNCATED
        elif selection.was_truncated and not context_text:
            context_text = format_snippets([], was_truncated=True)

        user_message = review_user_prompt(fitted.diff_text, context_text, files, notice)
        return _Fitted(
            user_message=user_message,
            diff_cut=fitted.diff_text != diff_text,
            was_truncated=selection.was_truncated or outcome.was_truncated,
        )

    def _frame(self, files: list[str], notice: str | None) -> str:
        """Costliest user turn with empty buckets.

        Carries the diff fence, the context header, the joins between
        context buckets and the truncation marker, so whatever _fit adds
        around the fitted content is already paid for.
        """
        contexts = (
            "\n\n" * (len(_CONTEXT_BUCKETS) - 1) + constants.CONTEXT_TRUNCATED,
            format_snippets([], was_truncated=True),
        )
        candidates = [
            review_user_prompt(diff, context, files, notice)
            for diff in ("", "\n")
            for context in contexts
        ]
        return max(candidates, key=self._calculator.count)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(
        self,
        diff_text: str,
        snippets: list[ContextSnippet] | None = None,
        token: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> AnalysisResult:
        """Review diff_text. CancellationError and FatalModelError propagate."""
        token = token or none_token()
        records: list[ToolCallRecord] = []
        logger.info("Starting analysis with tool-calling support")

        session = SubagentSessionManager(self._settings, token)
        try:
            prepared = self.prepare_prompt(diff_text, snippets or [])
            registry = self._registry if prepared.tools_enabled else ToolRegistry()
            context = ExecutionContext(
                label=MAIN_LABEL,
                token=token,
                session_manager=session,
                subagent_executor=SubagentExecutor(
                    self._client, self._registry, self._settings, self._validator
                ),
            )
            executor = ToolExecutor(registry, self._settings)
            conversation = ConversationState(max_iterations=self._settings.max_iterations)
            conversation.add_user(prepared.user_message)
            runner = ConversationRunner(
                self._client, executor, context, self._validator, progress
            )
            handler = _RecordingHandler(
                records, self._validator, prepared.system_prompt, conversation
            )

            result = await runner.run(
                RunnerConfig(
                    system_prompt=prepared.system_prompt,
                    max_iterations=self._settings.max_iterations,
                    label=MAIN_LABEL,
                    requires_explicit_completion=prepared.tools_enabled
                    and "submit_review" in registry,
                ),
                conversation,
                token,
                handler,
            )
        except FatalModelError:
            raise
        except Exception as e:
            if is_cancellation(e):
                raise
            logger.exception("Error during analysis")
            message = error_message(e)
            return AnalysisResult(
                analysis=f"Error during analysis: {message}",
                tool_calls=ToolCallsData(calls=records, analysis_error=message),
                outcome=RunOutcome.FAILED,
            )
        finally:
            session.dispose()

        if result.outcome in (RunOutcome.CANCELLED, RunOutcome.TIMED_OUT):
            token.raise_if_cancelled()

        analysis = extract_review_from_malformed_call(result.response) or result.response
        if result.outcome == RunOutcome.MAX_ITERATIONS:
            logger.warning("Analysis stopped at iteration ceiling; returning partial findings")
            analysis = analysis or "Conversation reached maximum iterations. The review may be incomplete."
        else:
            logger.info("Analysis finished (%s)", result.outcome.value)

        return AnalysisResult(
            analysis=analysis,
            tool_calls=ToolCallsData(
                calls=records,
                analysis_completed=result.outcome == RunOutcome.COMPLETED,
                analysis_error=result.error,
            ),
            outcome=result.outcome,
        )


@dataclass
class _Fitted:
    user_message: str
    diff_cut: bool
    was_truncated: bool
