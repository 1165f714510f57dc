"""In-loop context window checks for tool-calling conversations.

Before each model call the runner asks the validator how full the window
is.  Past the warning ratio the oldest tool interactions are dropped until
usage is back under the cleanup ratio; at the hard limit the model is asked
to wrap up with what it has.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from enum import StrEnum

from revu.agent.models import Message
from revu.config import Settings
from revu.tokens import constants
from revu.tokens.calculator import TokenCalculator

logger = logging.getLogger(__name__)


class ContextAction(StrEnum):
    CONTINUE = "continue"
    REMOVE_OLD_CONTEXT = "remove_old_context"
    REQUEST_FINAL_ANSWER = "request_final_answer"


@dataclass
class TokenValidation:
    total_tokens: int
    max_tokens: int
    exceeds_warning_threshold: bool
    exceeds_max_tokens: bool
    action: ContextAction


@dataclass
class ContextCleanup:
    messages: list[Message]
    tool_results_removed: int = 0
    assistant_messages_removed: int = 0
    context_full_message_added: bool = False


class TokenValidator:
    """Measures conversation history against the model window."""

    def __init__(self, calculator: TokenCalculator, settings: Settings | None = None) -> None:
        self._calculator = calculator
        self._settings = settings

    @property
    def max_tokens(self) -> int:
        return self._calculator.model_token_limit()

    @property
    def warning_ratio(self) -> float:
        if self._settings is not None:
            return self._settings.context_warning_ratio
        return constants.CONTEXT_WARNING_RATIO

    @property
    def cleanup_ratio(self) -> float:
        if self._settings is not None:
            return self._settings.context_cleanup_ratio
        return constants.CONTEXT_CLEANUP_RATIO

    def message_tokens(self, message: Message) -> int:
        tokens = constants.TOKEN_OVERHEAD_PER_MESSAGE
        if message.content:
            tokens += self._calculator.count(message.content)
        for call in message.tool_calls or []:
            tokens += self._calculator.count(json.dumps(asdict(call)))
        return tokens

    def count(self, messages: list[Message], system_prompt: str) -> int:
        return self._calculator.count(system_prompt) + sum(
            self.message_tokens(m) for m in messages
        )

    def validate(self, messages: list[Message], system_prompt: str) -> TokenValidation:
        total = self.count(messages, system_prompt)
        max_tokens = self.max_tokens
        exceeds_warning = total >= int(max_tokens * self.warning_ratio)
        exceeds_max = total >= max_tokens

        if exceeds_max:
            action = ContextAction.REQUEST_FINAL_ANSWER
        elif exceeds_warning:
            action = ContextAction.REMOVE_OLD_CONTEXT
        else:
            action = ContextAction.CONTINUE

        return TokenValidation(
            total_tokens=total,
            max_tokens=max_tokens,
            exceeds_warning_threshold=exceeds_warning,
            exceeds_max_tokens=exceeds_max,
            action=action,
        )

    def cleanup(
        self,
        messages: list[Message],
        system_prompt: str,
        target_ratio: float | None = None,
    ) -> ContextCleanup:
        """Drop oldest tool interactions until usage is under target_ratio.

        The original messages list is not modified.
        """
        ratio = self.cleanup_ratio if target_ratio is None else target_ratio
        target = int(self.max_tokens * ratio)
        result = ContextCleanup(messages=list(messages))

        while self.count(result.messages, system_prompt) > target:
            removed = _remove_oldest_tool_interaction(result.messages)
            if removed is None:
                break
            tool_results, assistants = removed
            result.tool_results_removed += tool_results
            result.assistant_messages_removed += assistants

        if result.tool_results_removed or result.assistant_messages_removed:
            result.messages.append(Message(role="user", content=constants.CONTEXT_FULL_NOTICE))
            result.context_full_message_added = True
            logger.info(
                "Context cleanup: removed %d tool results and %d assistant messages",
                result.tool_results_removed,
                result.assistant_messages_removed,
            )
        return result

    def is_response_size_acceptable(self, text: str) -> bool:
        limit = (
            self._settings.max_tool_response_chars
            if self._settings is not None
            else constants.MAX_TOOL_RESPONSE_CHARS
        )
        return len(text) <= limit


def _remove_oldest_tool_interaction(messages: list[Message]) -> tuple[int, int] | None:
    """Remove the oldest tool result plus its requesting assistant turn, in place.

    All sibling results of that assistant turn go too, so no tool result is
    left without the call that produced it.  Returns (tool results removed,
    assistant messages removed), or None when there is nothing to remove.
    """
    first_tool = next((i for i, m in enumerate(messages) if m.role == "tool"), None)
    if first_tool is None:
        return None

    call_id = messages[first_tool].tool_call_id
    owner = None
    for i in range(first_tool - 1, -1, -1):
        m = messages[i]
        if m.role == "assistant" and m.tool_calls and any(c.id == call_id for c in m.tool_calls):
            owner = i
            break

    if owner is None:
        del messages[first_tool]
        return 1, 0

    sibling_ids = {c.id for c in messages[owner].tool_calls or []}
    kept: list[Message] = []
    tool_results = 0
    for i, m in enumerate(messages):
        if i == owner:
            continue
        if m.role == "tool" and m.tool_call_id in sibling_ids:
            tool_results += 1
            continue
        kept.append(m)
    messages[:] = kept
    return tool_results, 1
