"""Token accounting for prompt components.

TokenCalculator measures the token cost of a TokenComponents bundle with an
injected tokenizer and produces a TokenAllocation breakdown against the
model's safe input budget.  When no tokenizer is injected it falls back to
CharTokenizer (chars/4 heuristic) and a conservative 8K window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Protocol, runtime_checkable

from revu.config import ContentType
from revu.tokens import constants

logger = logging.getLogger(__name__)

BUCKET_FIELDS: dict[str, str] = {
    "diff": "diff_text",
    "embedding": "embedding_context",
    "lsp-reference": "lsp_reference_context",
    "lsp-definition": "lsp_definition_context",
}


@runtime_checkable
class Tokenizer(Protocol):
    """Per-text token counting for the active model."""

    max_input_tokens: int | None

    def count_tokens(self, text: str) -> int: ...


class CharTokenizer:
    """Estimates token counts with optional calibration from API usage.

    Starts with chars/4 heuristic. Improves via calibrate() after each
    API response using actual input_tokens from usage data.
    """

    def __init__(self, max_input_tokens: int | None = None) -> None:
        self.max_input_tokens = max_input_tokens
        self._ratio: float = 1.0 / constants.CHARS_PER_TOKEN_ESTIMATE
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return max(1, int(len(text) * self._ratio))

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


@dataclass
class TokenComponents:
    """Everything that will be framed into one model request."""

    system_prompt: str = ""
    diff_text: str = ""
    embedding_context: str = ""
    lsp_reference_context: str = ""
    lsp_definition_context: str = ""
    user_messages: list[str] = field(default_factory=list)
    assistant_messages: list[str] = field(default_factory=list)
    response_prefill: str = ""

    def bucket(self, content_type: ContentType) -> str:
        return getattr(self, BUCKET_FIELDS[content_type])

    def with_bucket(self, content_type: ContentType, text: str) -> TokenComponents:
        return replace(self, **{BUCKET_FIELDS[content_type]: text})

    @property
    def message_count(self) -> int:
        return (
            (1 if self.system_prompt else 0)
            + len(self.user_messages)
            + len(self.assistant_messages)
            + (1 if self.response_prefill else 0)
        )


@dataclass
class TokenAllocation:
    total_available_tokens: int
    system_prompt_tokens: int = 0
    diff_tokens: int = 0
    context_tokens: dict[str, int] = field(default_factory=dict)
    user_messages_tokens: int = 0
    assistant_messages_tokens: int = 0
    response_prefill_tokens: int = 0
    message_overhead_tokens: int = 0
    other_tokens: int = 0

    @property
    def total_context_tokens(self) -> int:
        return sum(self.context_tokens.values())

    @property
    def fixed_tokens(self) -> int:
        return (
            self.system_prompt_tokens
            + self.user_messages_tokens
            + self.assistant_messages_tokens
            + self.response_prefill_tokens
            + self.message_overhead_tokens
            + self.other_tokens
        )

    @property
    def total_required(self) -> int:
        return self.fixed_tokens + self.diff_tokens + self.total_context_tokens

    @property
    def fits(self) -> bool:
        return self.total_required <= self.total_available_tokens


class TokenCalculator:
    """Computes token usage and allocation for prompt components."""

    def __init__(self, tokenizer: Tokenizer | None = None) -> None:
        if tokenizer is None:
            logger.warning(
                "No tokenizer available, using chars/%d estimate and %d token window",
                int(constants.CHARS_PER_TOKEN_ESTIMATE),
                constants.DEFAULT_MAX_INPUT_TOKENS,
            )
            tokenizer = CharTokenizer()
        self._tokenizer = tokenizer
        self._fallback = CharTokenizer()

    @property
    def tokenizer(self) -> Tokenizer:
        return self._tokenizer

    def model_token_limit(self) -> int:
        return self._tokenizer.max_input_tokens or constants.DEFAULT_MAX_INPUT_TOKENS

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return self._tokenizer.count_tokens(text)
        except Exception as e:
            logger.warning("Tokenizer failed (%s), falling back to estimate", e)
            return self._fallback.count_tokens(text)

    def bucket_tokens(self, components: TokenComponents) -> dict[str, int]:
        """Current size of each truncatable bucket keyed by content type."""
        return {
            content_type: self.count(components.bucket(content_type))
            for content_type in BUCKET_FIELDS
        }

    def calculate_fixed_tokens(self, components: TokenComponents) -> int:
        """Tokens for everything that can never be truncated."""
        fixed = self.count(components.system_prompt)
        fixed += sum(self.count(m) for m in components.user_messages)
        fixed += sum(self.count(m) for m in components.assistant_messages)
        fixed += self.count(components.response_prefill)
        fixed += components.message_count * constants.TOKEN_OVERHEAD_PER_MESSAGE
        return fixed + constants.FORMATTING_OVERHEAD

    def calculate_component_tokens(self, components: TokenComponents) -> int:
        """Flat total for the whole bundle, overhead included."""
        return self.calculate_fixed_tokens(components) + sum(
            self.bucket_tokens(components).values()
        )

    def calculate_allocation(
        self,
        components: TokenComponents,
        safety_ratio: float | None = None,
    ) -> TokenAllocation:
        ratio = constants.SAFETY_MARGIN_RATIO if safety_ratio is None else safety_ratio
        safe_max = int(self.model_token_limit() * ratio)
        buckets = self.bucket_tokens(components)

        return TokenAllocation(
            total_available_tokens=safe_max,
            system_prompt_tokens=self.count(components.system_prompt),
            diff_tokens=buckets.pop("diff"),
            context_tokens=buckets,
            user_messages_tokens=sum(self.count(m) for m in components.user_messages),
            assistant_messages_tokens=sum(
                self.count(m) for m in components.assistant_messages
            ),
            response_prefill_tokens=self.count(components.response_prefill),
            message_overhead_tokens=(
                components.message_count * constants.TOKEN_OVERHEAD_PER_MESSAGE
            ),
            other_tokens=constants.FORMATTING_OVERHEAD,
        )
