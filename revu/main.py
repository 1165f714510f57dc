"""revu entry point.

Reviews one unified diff read from a file (or stdin) and prints the review:
  Settings -> CharTokenizer -> TokenCalculator -> AnthropicClient -> ToolCallingAnalysis

Ctrl-C cancels the analysis through the cancellation token so running
subagents are stopped too.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from revu.agent.analysis import AnalysisResult, ToolCallingAnalysis
from revu.agent.client import AnthropicClient
from revu.cancellation import CancellationSource
from revu.config import Settings
from revu.errors import CancellationError, FatalModelError, RunOutcome
from revu.tokens.calculator import CharTokenizer, TokenCalculator
from revu.tools.review import SubmitReviewTool
from revu.tools.subagent import RunSubagentTool

logger = logging.getLogger(__name__)


def build_analysis(settings: Settings, client: AnthropicClient, tokenizer: CharTokenizer) -> ToolCallingAnalysis:
    """Wire the analysis with the built-in tools."""
    return ToolCallingAnalysis(
        client=client,
        tools=[RunSubagentTool(), SubmitReviewTool()],
        settings=settings,
        calculator=TokenCalculator(tokenizer),
    )


def _progress(message: str, increment: float) -> None:
    logger.info("Progress: %s", message)


def _read_diff(argv: list[str]) -> str:
    if len(argv) > 1 and argv[1] != "-":
        with open(argv[1], encoding="utf-8") as f:
            return f.read()
    return sys.stdin.read()


async def run(settings: Settings, diff_text: str) -> AnalysisResult:
    tokenizer = CharTokenizer(max_input_tokens=settings.max_input_tokens)
    client = AnthropicClient(settings, tokenizer)
    await client.start()

    source = CancellationSource()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, source.cancel)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")

    try:
        analysis = build_analysis(settings, client, tokenizer)
        return await analysis.analyze(diff_text, token=source.token, progress=_progress)
    finally:
        source.dispose()
        await client.close()


def main() -> None:
    """Entry point -- parse settings, read the diff, run one review."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Model: %s", settings.model)
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "the review will fail"
        )

    diff_text = _read_diff(sys.argv)
    if not diff_text.strip():
        print("Error: empty diff", file=sys.stderr)
        sys.exit(1)

    try:
        result = asyncio.run(run(settings, diff_text))
    except CancellationError:
        print("Review cancelled", file=sys.stderr)
        sys.exit(130)
    except FatalModelError as e:
        print(f"Error: {e}. Choose a different model with REVU_MODEL.", file=sys.stderr)
        sys.exit(2)

    print(result.analysis)
    stats = result.tool_calls
    logger.info(
        "Review %s: %d tool calls (%d ok, %d failed)",
        result.outcome.value,
        stats.total_calls,
        stats.successful_calls,
        stats.failed_calls,
    )
    if result.outcome == RunOutcome.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    main()
