"""Tests for context snippet deduplication, ordering and budgeted selection."""

import pytest

from revu.tokens import constants
from revu.tokens.snippets import (
    ContextSnippet,
    SnippetSelector,
    close_open_fence,
    deduplicate,
    format_snippets,
    separate_by_type,
)


def _snippet(id, type="embedding", content=None, score=0.5):
    return ContextSnippet(id=id, type=type, content=content or f"content of {id}", relevance_score=score)


@pytest.fixture
def selector(calculator):
    return SnippetSelector(calculator)


class TestDeduplicate:
    def test_keeps_highest_relevance_copy(self):
        low = _snippet("low", content="same body", score=0.2)
        high = _snippet("high", content="same body\n", score=0.9)
        other = _snippet("other")

        result = deduplicate([low, other, high])

        assert {s.id for s in result} == {"high", "other"}

    def test_first_copy_wins_on_tie(self):
        a = _snippet("a", content="x", score=0.5)
        b = _snippet("b", content="x", score=0.5)
        assert [s.id for s in deduplicate([a, b])] == ["a"]


class TestSelection:
    def test_prioritize_by_type_then_relevance(self, selector):
        snippets = [
            _snippet("def", type="lsp-definition", score=0.99),
            _snippet("emb-low", score=0.1),
            _snippet("ref", type="lsp-reference", score=0.3),
            _snippet("emb-high", score=0.8),
        ]
        assert [s.id for s in selector.prioritize(snippets)] == [
            "emb-high",
            "emb-low",
            "ref",
            "def",
        ]

    def test_custom_order(self, calculator):
        selector = SnippetSelector(
            calculator, order=["lsp-definition", "lsp-reference", "embedding", "diff"]
        )
        snippets = [_snippet("emb"), _snippet("def", type="lsp-definition", score=0.1)]
        assert [s.id for s in selector.prioritize(snippets)][0] == "def"

    def test_everything_fits(self, selector):
        snippets = [_snippet("a"), _snippet("b", type="lsp-reference")]
        selection = selector.select(snippets, 1000)
        assert [s.id for s in selection.snippets] == ["a", "b"]
        assert selection.was_truncated is False

    def test_empty_input(self, selector):
        assert selector.select([], 100) == ([], False)

    def test_last_snippet_partially_included(self, selector, calculator):
        first = _snippet("first", content="a" * 200, score=0.9)
        second = _snippet("second", content="line\n" * 200, score=0.1)

        selection = selector.select([first, second], 150)

        assert selection.was_truncated
        assert [s.id for s in selection.snippets] == ["first", "second-partial"]
        assert selection.snippets[1].content.endswith(constants.PARTIAL_TRUNCATED)
        used = sum(calculator.count(s.content) for s in selection.snippets)
        assert used <= 150

    def test_snippet_dropped_when_too_little_room(self, selector):
        first = _snippet("first", content="a" * 560, score=0.9)
        second = _snippet("second", content="b" * 800, score=0.1)

        selection = selector.select([first, second], 150)

        assert [s.id for s in selection.snippets] == ["first"]
        assert selection.was_truncated

    def test_open_fence_closed_before_marker(self, selector, calculator):
        content = "```ts\n" + "code line\n" * 200 + "more code"
        selection = selector.select([_snippet("ts", content=content)], 100)

        assert selection.was_truncated
        [partial] = selection.snippets
        assert partial.content.endswith("\n```" + constants.PARTIAL_TRUNCATED)
        assert calculator.count(partial.content) <= 100


class TestFormatting:
    def test_close_open_fence(self):
        assert close_open_fence("```py\nx = 1") == "```py\nx = 1\n```"
        assert close_open_fence("```py\nx = 1\n```") == "```py\nx = 1\n```"
        assert close_open_fence("no fences") == "no fences"

    def test_sections_per_type(self):
        text = format_snippets([
            _snippet("d", type="lsp-definition", content="def body"),
            _snippet("e", content="embedding body"),
        ])
        assert text.index("## Semantically Similar Code") < text.index("## Definitions Found")
        assert "## References Found" not in text

    def test_truncated_marker(self):
        text = format_snippets([_snippet("e")], was_truncated=True)
        assert text.endswith(constants.CONTEXT_TRUNCATED)

    def test_everything_dropped(self):
        text = format_snippets([], was_truncated=True)
        assert "All context snippets were too large to fit" in text

    def test_separate_by_type(self):
        buckets = separate_by_type([_snippet("e"), _snippet("r", type="lsp-reference")])
        assert "content of e" in buckets["embedding"]
        assert "content of r" in buckets["lsp-reference"]
        assert buckets["lsp-definition"] == ""
