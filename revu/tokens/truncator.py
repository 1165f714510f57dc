"""Waterfall truncation of prompt content buckets.

Truncatable content lives in four buckets (diff, embedding context,
LSP reference context, LSP definition context).  When the bundle does not
fit the target, buckets are walked in the configured priority order: each
bucket is kept whole while it fits, the first one that does not fit is
cut down to exactly the remaining budget, and everything after it is
cleared.  Higher-priority content is never sacrificed to keep
lower-priority content.

Diff content has a structure-aware fallback: whole hunks are kept when a
proportional cut would leave nothing usable, and a file-list summary is
emitted when not even one hunk fits.
"""

from __future__ import annotations

import logging
import math
from typing import NamedTuple

from revu.config import DEFAULT_CONTENT_ORDER, ContentType, Settings
from revu.tokens import constants
from revu.tokens.calculator import TokenCalculator, TokenComponents

logger = logging.getLogger(__name__)

_FILE_HEADER_PREFIXES = ("diff --git", "index ", "--- ", "+++ ", "new file mode", "deleted file mode")
_MAX_SHRINK_ATTEMPTS = 8


class TruncationOutcome(NamedTuple):
    components: TokenComponents
    was_truncated: bool


class TextCut(NamedTuple):
    content: str
    was_truncated: bool


class WaterfallTruncator:
    """Priority-ordered truncation of TokenComponents to a token target."""

    def __init__(
        self,
        calculator: TokenCalculator,
        settings: Settings | None = None,
        order: list[ContentType] | None = None,
    ) -> None:
        self._calculator = calculator
        self._settings = settings
        self._order_override = list(order) if order else None

    # ------------------------------------------------------------------
    # Prioritization
    # ------------------------------------------------------------------

    @property
    def order(self) -> list[ContentType]:
        """Current priority order (highest first), read live from settings."""
        if self._order_override is not None:
            return list(self._order_override)
        if self._settings is not None:
            return list(self._settings.content_order)
        return list(DEFAULT_CONTENT_ORDER)

    def set_prioritization(self, order: list[ContentType]) -> None:
        if sorted(order) != sorted(DEFAULT_CONTENT_ORDER):
            raise ValueError(f"order must be a permutation of {DEFAULT_CONTENT_ORDER}")
        self._order_override = list(order)

    # ------------------------------------------------------------------
    # Waterfall
    # ------------------------------------------------------------------

    def truncate(self, components: TokenComponents, target_tokens: int) -> TruncationOutcome:
        """Fit components into target_tokens. Never raises."""
        calc = self._calculator
        fixed = calc.calculate_fixed_tokens(components)
        if fixed > target_tokens:
            logger.warning(
                "Fixed prompt cost (%d) exceeds target (%d), clearing all content",
                fixed,
                target_tokens,
            )
            return TruncationOutcome(self._cleared(components, self.order), True)

        available = target_tokens - fixed
        sizes = calc.bucket_tokens(components)
        if sum(sizes.values()) <= available:
            return TruncationOutcome(components, False)

        result = components
        remaining = available
        order = self.order
        for index, content_type in enumerate(order):
            size = sizes[content_type]
            if size == 0:
                continue
            if remaining <= 0:
                result = self._cleared(result, order[index:])
                break
            if size <= remaining:
                remaining -= size
                continue

            original = result.bucket(content_type)
            if content_type == "diff":
                cut = self.truncate_diff(original, remaining)
            else:
                cut = self.truncate_text(original, remaining)
            logger.info(
                "Truncated %s content from %d to %d tokens (budget %d)",
                content_type,
                size,
                calc.count(cut.content),
                remaining,
            )
            result = result.with_bucket(content_type, cut.content)
            result = self._cleared(result, order[index + 1:])
            remaining = 0
            break

        result = self._enforce_budget(result, target_tokens)
        return TruncationOutcome(result, True)

    def _enforce_budget(self, components: TokenComponents, target_tokens: int) -> TokenComponents:
        """Clear lowest-priority buckets until the measured total fits."""
        for content_type in reversed(self.order):
            if self._calculator.calculate_component_tokens(components) <= target_tokens:
                break
            if components.bucket(content_type):
                logger.warning("Clearing %s content to satisfy token budget", content_type)
                components = components.with_bucket(content_type, "")
        return components

    @staticmethod
    def _cleared(components: TokenComponents, content_types: list[ContentType]) -> TokenComponents:
        for content_type in content_types:
            components = components.with_bucket(content_type, "")
        return components

    # ------------------------------------------------------------------
    # Proportional truncation
    # ------------------------------------------------------------------

    def truncate_text(
        self,
        content: str,
        target_tokens: int,
        marker: str = constants.PARTIAL_TRUNCATED,
    ) -> TextCut:
        """Cut content to target_tokens, snapped to a full line, plus marker.

        Returns empty content when nothing but the marker would fit.
        """
        count = self._calculator.count
        if count(content) <= target_tokens:
            return TextCut(content, False)

        available = target_tokens - count(marker)
        if available <= 0:
            return TextCut("", True)

        chars = int(available * constants.CHARS_PER_TOKEN_ESTIMATE)
        for _ in range(_MAX_SHRINK_ATTEMPTS):
            if chars <= 0:
                break
            head = content[:chars]
            newline = head.rfind("\n")
            if newline > -1:
                head = head[:newline]
            if not head.strip():
                break
            candidate = head + marker
            tokens = count(candidate)
            if tokens <= target_tokens:
                return TextCut(candidate, True)
            chars -= max(1, math.ceil((tokens - target_tokens) * constants.CHARS_PER_TOKEN_ESTIMATE))

        return TextCut("", True)

    # ------------------------------------------------------------------
    # Diff truncation
    # ------------------------------------------------------------------

    def truncate_diff(self, diff_text: str, target_tokens: int) -> TextCut:
        """Proportional cut first, hunk-preserving fallback second."""
        cut = self.truncate_text(diff_text, target_tokens)
        if cut.content:
            return cut

        logger.warning("Diff content extremely large, applying emergency hunk-based truncation")
        return self.truncate_diff_by_hunks(diff_text, target_tokens)

    def truncate_diff_by_hunks(self, diff_text: str, target_tokens: int) -> TextCut:
        count = self._calculator.count
        if target_tokens < constants.MIN_DIFF_TOKENS_FOR_HUNKS:
            return self._fit_summary(diff_text, target_tokens)

        budget = target_tokens - count(constants.HUNKS_TRUNCATED)
        kept: list[str] = []
        used = 0
        exhausted = False
        for header, hunks in parse_diff_sections(diff_text):
            header_pending = bool(header)
            for hunk in hunks:
                piece = (header + hunk) if header_pending else hunk
                cost = count("\n".join(piece) + "\n")
                if used + cost > budget:
                    exhausted = True
                    break
                kept.extend(piece)
                used += cost
                header_pending = False
            if exhausted:
                break

        if not kept:
            return self._fit_summary(diff_text, target_tokens)

        while kept:
            candidate = "\n".join(kept) + constants.HUNKS_TRUNCATED
            if count(candidate) <= target_tokens:
                return TextCut(candidate, True)
            kept = _drop_last_hunk(kept)
        return self._fit_summary(diff_text, target_tokens)

    def _fit_summary(self, diff_text: str, target_tokens: int) -> TextCut:
        files = changed_files(diff_text)
        for limit in range(min(len(files), constants.MAX_SUMMARY_FILES), -1, -1):
            summary = minimal_diff_summary(files, limit)
            if self._calculator.count(summary) <= target_tokens:
                return TextCut(summary, True)
        return TextCut("", True)


# ----------------------------------------------------------------------
# Diff parsing helpers
# ----------------------------------------------------------------------


def parse_diff_sections(diff_text: str) -> list[tuple[list[str], list[list[str]]]]:
    """Split a unified diff into (file header lines, hunks) per file."""
    sections: list[tuple[list[str], list[list[str]]]] = []
    header: list[str] = []
    hunks: list[list[str]] = []
    current: list[str] | None = None

    for line in diff_text.split("\n"):
        if line.startswith("diff --git"):
            if header or hunks:
                sections.append((header, hunks))
            header, hunks, current = [line], [], None
        elif line.startswith("@@"):
            current = [line]
            hunks.append(current)
        elif current is not None:
            current.append(line)
        elif line.startswith(_FILE_HEADER_PREFIXES) or line.strip():
            header.append(line)

    if header or hunks:
        sections.append((header, hunks))
    return sections


def _drop_last_hunk(lines: list[str]) -> list[str]:
    for i in range(len(lines) - 1, -1, -1):
        if lines[i].startswith("@@"):
            head = lines[:i]
            # Drop a file header left without any hunk
            if head and head[-1].startswith("+++ "):
                while head and head[-1].startswith(_FILE_HEADER_PREFIXES):
                    if head.pop().startswith("diff --git"):
                        break
            return head
    return []


def changed_files(diff_text: str) -> list[str]:
    files: list[str] = []
    for line in diff_text.split("\n"):
        if line.startswith(("--- ", "+++ ")):
            path = line[4:].strip()
            if path.startswith(("a/", "b/")):
                path = path[2:]
            if path != "/dev/null" and path not in files:
                files.append(path)
    return files


def minimal_diff_summary(files: list[str], limit: int = constants.MAX_SUMMARY_FILES) -> str:
    shown = files[:limit]
    suffix = f", showing first {len(shown)}" if len(files) > len(shown) else ""
    lines = [
        constants.EMERGENCY_HEADER,
        "",
        f"Files modified ({len(files)} total{suffix}):",
        *(f"- {path}" for path in shown),
        "",
        constants.EMERGENCY_FOOTER,
    ]
    return "\n".join(lines)
