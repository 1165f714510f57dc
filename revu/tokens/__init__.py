"""Token budget engine.

Measures prompt components, fits diff and context snippets into the model
window in priority order, and keeps the running conversation under the
window during tool-calling loops.
"""

from revu.tokens.calculator import (
    CharTokenizer,
    TokenAllocation,
    TokenCalculator,
    TokenComponents,
    Tokenizer,
)
from revu.tokens.snippets import (
    ContextSnippet,
    SnippetSelection,
    SnippetSelector,
    format_snippets,
    separate_by_type,
)
from revu.tokens.truncator import TextCut, TruncationOutcome, WaterfallTruncator
from revu.tokens.validator import ContextAction, TokenValidation, TokenValidator

__all__ = [
    "CharTokenizer",
    "ContextAction",
    "ContextSnippet",
    "SnippetSelection",
    "SnippetSelector",
    "TextCut",
    "TokenAllocation",
    "TokenCalculator",
    "TokenComponents",
    "TokenValidation",
    "TokenValidator",
    "Tokenizer",
    "TruncationOutcome",
    "WaterfallTruncator",
    "format_snippets",
    "separate_by_type",
]
