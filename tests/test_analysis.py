"""End-to-end tests for ToolCallingAnalysis with a scripted model."""

import json

import pytest

from revu.agent.analysis import AnalysisResult, ToolCallingAnalysis, _RecordingHandler
from revu.agent.models import ConversationState
from revu.cancellation import CancellationSource
from revu.errors import CancellationError, ModelNotSupportedError, RunOutcome
from revu.tokens import constants
from revu.tokens.calculator import TokenCalculator, TokenComponents
from revu.tokens.snippets import ContextSnippet
from revu.tokens.validator import TokenValidator
from revu.tools.review import SubmitReviewTool
from revu.tools.subagent import RunSubagentTool

from tests.fakes import CharCountTokenizer, FakeModelClient, make_settings, text_response, tool_response

REVIEW = "## Summary\n> **TL;DR**: Adds retry logic. Low risk.\n\n## What's Good\nClear tests."

DIFF = """diff --git a/net/retry.py b/net/retry.py
index 1a2b3c4..5d6e7f8 100644
--- a/net/retry.py
+++ b/net/retry.py
@@ -10,6 +10,9 @@ def fetch(url):
-    return session.get(url)
+    for attempt in range(3):
+        try:
+            return session.get(url)
+        except TimeoutError:
+            continue"""


def _submit(review=REVIEW):
    return tool_response(("submit_review", json.dumps({"review_content": review})))


def _make_analysis(client, settings=None, window=50_000):
    return ToolCallingAnalysis(
        client=client,
        tools=[RunSubagentTool(), SubmitReviewTool()],
        settings=settings or make_settings(max_iterations=5),
        calculator=TokenCalculator(CharCountTokenizer(max_input_tokens=window)),
    )


# ---------------------------------------------------------------------------
# Prompt fitting
# ---------------------------------------------------------------------------


class TestPreparePrompt:
    def test_small_diff_keeps_tools(self):
        prepared = _make_analysis(FakeModelClient()).prepare_prompt(DIFF, [])

        assert prepared.tools_enabled
        assert not prepared.was_truncated
        assert f"```diff\n{DIFF}\n```" in prepared.user_message
        assert "## Files Changed (1)\n- net/retry.py" in prepared.user_message
        assert "submit_review" in prepared.system_prompt

    def test_snippets_rendered_as_context(self):
        snippets = [
            ContextSnippet("s1", "lsp-definition", "def fetch(url): ...", 0.9, "net/retry.py", 10),
            ContextSnippet("s2", "embedding", "class Session: ...", 0.4),
        ]
        prepared = _make_analysis(FakeModelClient()).prepare_prompt(DIFF, snippets)

        assert "## Related Code Context" in prepared.user_message
        assert "## Semantically Similar Code (Embeddings)\n\nclass Session: ..." in prepared.user_message
        assert "def fetch(url): ..." in prepared.user_message

    def test_huge_diff_disables_tools(self):
        huge = DIFF + "\n" + "\n".join(f"+    line_{i} = compute({i})" for i in range(2000))
        analysis = _make_analysis(FakeModelClient(), window=4000)

        prepared = analysis.prepare_prompt(huge, [])

        assert not prepared.tools_enabled
        assert prepared.was_truncated
        assert prepared.user_message.startswith(constants.TOOLS_DISABLED_NOTICE)
        assert "submit_review" not in prepared.system_prompt
        total = analysis._calculator.count(prepared.system_prompt) + analysis._calculator.count(
            prepared.user_message
        )
        assert total <= 4000

    def test_decorated_prompt_stays_within_tool_target(self):
        """Headers, fences and truncation markers count against the target."""
        snippets = [
            ContextSnippet(f"e{i}", "embedding", f"# similar block {i}\n" + "x = 1\n" * 160, 0.5)
            for i in range(20)
        ] + [
            ContextSnippet(f"r{i}", "lsp-reference", f"fetch(url)  # caller {i}\n" * 40, 0.7)
            for i in range(10)
        ]
        analysis = _make_analysis(FakeModelClient(), window=10_000)

        prepared = analysis.prepare_prompt(DIFF, snippets)

        assert prepared.tools_enabled
        assert prepared.was_truncated
        assert prepared.user_message.count("## Related Code Context") == 1
        assert constants.CONTEXT_TRUNCATED in prepared.user_message
        fitted = TokenComponents(
            system_prompt=prepared.system_prompt, user_messages=[prepared.user_message]
        )
        target = int(10_000 * (1 - constants.MIN_TOOL_SPACE_RATIO))
        assert analysis._calculator.calculate_component_tokens(fitted) <= target


# ---------------------------------------------------------------------------
# analyze()
# ---------------------------------------------------------------------------


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_submit_review_completes(self):
        client = FakeModelClient([_submit()])

        result = await _make_analysis(client).analyze(DIFF)

        assert isinstance(result, AnalysisResult)
        assert result.outcome == RunOutcome.COMPLETED
        assert result.analysis == REVIEW
        assert result.tool_calls.analysis_completed
        assert result.tool_calls.total_calls == 1
        assert client.requests[0]["tool_names"] == ["run_subagent", "submit_review"]

    @pytest.mark.asyncio
    async def test_planning_message_is_nudged(self):
        client = FakeModelClient([text_response("I will now review net/retry.py."), _submit()])

        result = await _make_analysis(client).analyze(DIFF)

        assert result.analysis == REVIEW
        assert client.call_count == 2

    @pytest.mark.asyncio
    async def test_malformed_submit_call_accepted(self):
        content = 'submit_review {"review_content": "## Summary\\nShip it."}'
        result = await _make_analysis(FakeModelClient([text_response(content)])).analyze(DIFF)

        assert result.outcome == RunOutcome.COMPLETED
        assert result.analysis == "## Summary\nShip it."

    @pytest.mark.asyncio
    async def test_subagent_investigation(self):
        task = "Check every caller of fetch() in net/ for assumptions about single attempts."
        client = FakeModelClient([
            tool_response(("run_subagent", json.dumps({"task": task}))),
            text_response("<summary>Two callers, both idempotent.</summary>"),
            _submit(),
        ])

        result = await _make_analysis(client).analyze(DIFF)

        assert result.outcome == RunOutcome.COMPLETED
        first, second = result.tool_calls.calls
        assert first.tool_name == "run_subagent"
        assert first.success
        assert "## Subagent #1 Investigation Complete" in first.result
        assert first.nested_calls == []
        assert second.tool_name == "submit_review"
        # The subagent saw neither run_subagent nor submit_review
        assert client.requests[1]["tool_names"] == []
        assert task in client.requests[1]["system_prompt"]

    @pytest.mark.asyncio
    async def test_tools_disabled_plain_answer(self):
        huge = DIFF + "\n" + "\n".join(f"+    line_{i} = compute({i})" for i in range(2000))
        client = FakeModelClient([text_response("Review of the visible part.")])

        result = await _make_analysis(client, window=4000).analyze(huge)

        assert result.outcome == RunOutcome.COMPLETED
        assert result.analysis == "Review of the visible part."
        assert client.requests[0]["tool_names"] == []

    @pytest.mark.asyncio
    async def test_iteration_ceiling_returns_partial(self):
        client = FakeModelClient([text_response("Looking at retry.py first.")])

        result = await _make_analysis(client, make_settings(max_iterations=2)).analyze(DIFF)

        assert result.outcome == RunOutcome.MAX_ITERATIONS
        assert "Looking at retry.py first." in result.analysis
        assert not result.tool_calls.analysis_completed
        assert result.tool_calls.analysis_error == "max_iterations"

    @pytest.mark.asyncio
    async def test_iteration_ceiling_without_text(self):
        client = FakeModelClient([tool_response(("run_subagent", '{"task": "too short"}'))])

        result = await _make_analysis(client, make_settings(max_iterations=2)).analyze(DIFF)

        assert result.outcome == RunOutcome.MAX_ITERATIONS
        assert result.analysis.startswith("Conversation reached maximum iterations")
        assert result.tool_calls.failed_calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_analysis_raises(self):
        source = CancellationSource()
        source.cancel()
        client = FakeModelClient()

        with pytest.raises(CancellationError):
            await _make_analysis(client).analyze(DIFF, token=source.token)
        assert client.call_count == 0

    @pytest.mark.asyncio
    async def test_fatal_model_error_raises(self):
        client = FakeModelClient([ModelNotSupportedError("claude-test", "no tool use")])
        with pytest.raises(ModelNotSupportedError):
            await _make_analysis(client).analyze(DIFF)

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failed_result(self, monkeypatch):
        analysis = _make_analysis(FakeModelClient())

        def broken(diff_text, snippets):
            raise RuntimeError("tokenizer exploded")

        monkeypatch.setattr(analysis, "prepare_prompt", broken)
        result = await analysis.analyze(DIFF)

        assert result.outcome == RunOutcome.FAILED
        assert result.analysis == "Error during analysis: tokenizer exploded"
        assert result.tool_calls.analysis_error == "tokenizer exploded"

    @pytest.mark.asyncio
    async def test_progress_reported(self):
        messages = []
        await _make_analysis(FakeModelClient([_submit()])).analyze(
            DIFF, progress=lambda message, increment: messages.append(message)
        )
        assert messages[0] == "Main Analysis: iteration 1/5"
        assert "Running submit_review" in messages


class TestContextStatus:
    def _handler(self, user_chars):
        validator = TokenValidator(TokenCalculator(CharCountTokenizer(max_input_tokens=100)))
        conversation = ConversationState(max_iterations=1)
        conversation.add_user("x" * user_chars)
        return _RecordingHandler([], validator, "", conversation)

    def test_quiet_below_half(self):
        assert self._handler(80).context_status_suffix() == ""

    def test_half_full(self):
        assert self._handler(220).context_status_suffix() == (
            "\n\n[Context: 60% used. 40 tokens remaining]"
        )

    def test_nearly_full(self):
        suffix = self._handler(340).context_status_suffix()
        assert suffix == (
            "\n\n[Context: 90% used (90/100 tokens). 10 remaining - consider wrapping up soon]"
        )
