"""Context snippet selection within a token budget.

Snippets are gathered elsewhere (embedding search, LSP lookups); this
module only deduplicates, orders and fits them.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, replace
from typing import NamedTuple

from revu.config import DEFAULT_CONTENT_ORDER, ContentType, Settings
from revu.tokens import constants
from revu.tokens.calculator import TokenCalculator

logger = logging.getLogger(__name__)

_JOINER = "\n\n"
_FENCE = "```"

_SECTION_TITLES: dict[str, str] = {
    "embedding": "## Semantically Similar Code (Embeddings)",
    "lsp-reference": "## References Found (LSP)",
    "lsp-definition": "## Definitions Found (LSP)",
}


@dataclass(frozen=True)
class ContextSnippet:
    id: str
    type: ContentType
    content: str
    relevance_score: float = 0.0
    file_path: str | None = None
    start_line: int | None = None


class SnippetSelection(NamedTuple):
    snippets: list[ContextSnippet]
    was_truncated: bool


class SnippetSelector:
    """Deduplicates, prioritizes and greedily fits snippets into a budget."""

    def __init__(
        self,
        calculator: TokenCalculator,
        settings: Settings | None = None,
        order: list[ContentType] | None = None,
    ) -> None:
        self._calculator = calculator
        self._settings = settings
        self._order_override = list(order) if order else None

    @property
    def order(self) -> list[ContentType]:
        if self._order_override is not None:
            return list(self._order_override)
        if self._settings is not None:
            return list(self._settings.content_order)
        return list(DEFAULT_CONTENT_ORDER)

    def select(self, snippets: list[ContextSnippet], available_tokens: int) -> SnippetSelection:
        unique = deduplicate(snippets)
        if not unique:
            return SnippetSelection([], False)

        ordered = self.prioritize(unique)
        count = self._calculator.count
        joiner_tokens = count(_JOINER)
        marker_tokens = count(constants.PARTIAL_TRUNCATED)
        selected: list[ContextSnippet] = []
        used = 0
        was_truncated = False

        for snippet in ordered:
            tokens = count(snippet.content)
            joiner = joiner_tokens if selected else 0
            if used + joiner + tokens <= available_tokens:
                selected.append(snippet)
                used += joiner + tokens
                continue

            was_truncated = True
            remaining = available_tokens - used - joiner
            if remaining > marker_tokens + constants.MIN_CONTENT_TOKENS_FOR_PARTIAL:
                partial = self._partial(snippet, remaining, "partial")
                if partial is not None:
                    selected.append(partial)
                    used += joiner + count(partial.content)
            break

        if not selected and available_tokens > (
            marker_tokens
            + constants.MIN_CONTENT_TOKENS_FOR_PARTIAL
            + constants.SAFETY_BUFFER_FOR_PARTIAL
        ):
            tiny = self._partial(ordered[0], available_tokens, "tiny")
            if tiny is not None:
                selected.append(tiny)
                used = count(tiny.content)
                was_truncated = True

        logger.info(
            "Context optimization: %d of %d snippets selected. Tokens used: %d / %d. Truncated: %s",
            len(selected),
            len(ordered),
            used,
            available_tokens,
            was_truncated,
        )
        return SnippetSelection(selected, was_truncated)

    def prioritize(self, snippets: list[ContextSnippet]) -> list[ContextSnippet]:
        """Sort by configured type priority, then relevance descending."""
        order = self.order

        def rank(snippet: ContextSnippet) -> tuple[int, float]:
            try:
                type_rank = order.index(snippet.type)
            except ValueError:
                type_rank = len(order)
            return type_rank, -snippet.relevance_score

        return sorted(snippets, key=rank)

    def _partial(self, snippet: ContextSnippet, budget: int, suffix: str) -> ContextSnippet | None:
        """Cut snippet content to budget tokens, closing any open code fence."""
        count = self._calculator.count
        reserve = (
            count(constants.PARTIAL_TRUNCATED)
            + count("\n" + _FENCE)
            + constants.SAFETY_BUFFER_FOR_PARTIAL
        )
        chars = int((budget - reserve) * constants.CHARS_PER_TOKEN_ESTIMATE)
        while chars > 0:
            content = close_open_fence(snippet.content[:chars]) + constants.PARTIAL_TRUNCATED
            tokens = count(content)
            if tokens <= budget:
                return replace(snippet, id=f"{snippet.id}-{suffix}", content=content)
            chars -= max(1, int((tokens - budget) * constants.CHARS_PER_TOKEN_ESTIMATE))
        return None


def deduplicate(snippets: list[ContextSnippet]) -> list[ContextSnippet]:
    """Drop snippets with identical content, keeping the most relevant copy."""
    best: dict[str, ContextSnippet] = {}
    for snippet in snippets:
        key = hashlib.sha256(snippet.content.strip().encode()).hexdigest()
        kept = best.get(key)
        if kept is None or snippet.relevance_score > kept.relevance_score:
            if kept is not None:
                logger.debug("Duplicate context snippet filtered out: %s", kept.id)
            best[key] = snippet
        else:
            logger.debug("Duplicate context snippet filtered out: %s", snippet.id)

    removed = len(snippets) - len(best)
    if removed:
        logger.info(
            "Context deduplication: removed %d duplicate snippets out of %d total",
            removed,
            len(snippets),
        )
    return list(best.values())


def close_open_fence(content: str) -> str:
    """Append a closing ``` when content ends inside a fenced block."""
    fences = sum(1 for line in content.split("\n") if line.lstrip().startswith(_FENCE))
    if fences % 2 == 1:
        return content + "\n" + _FENCE
    return content


def format_snippets(snippets: list[ContextSnippet], was_truncated: bool = False) -> str:
    """Render snippets as markdown under one heading per snippet type."""
    parts: list[str] = []
    for content_type in ("embedding", "lsp-reference", "lsp-definition"):
        group = [s.content for s in snippets if s.type == content_type]
        if not group:
            continue
        title = _SECTION_TITLES[content_type]
        parts.append(f"\n{title}" if parts else title)
        parts.extend(group)

    result = _JOINER.join(parts).strip()
    if was_truncated:
        if not result:
            return constants.CONTEXT_TRUNCATED.replace(
                "Some information might be missing",
                "All context snippets were too large to fit",
            ).strip()
        result += constants.CONTEXT_TRUNCATED
    return result


def separate_by_type(snippets: list[ContextSnippet]) -> dict[str, str]:
    """Formatted context text per snippet type, for the truncation buckets."""
    return {
        content_type: format_snippets([s for s in snippets if s.type == content_type])
        for content_type in ("embedding", "lsp-reference", "lsp-definition")
    }
