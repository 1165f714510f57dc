"""Error taxonomy for the review runtime.

Cancellation and fatal model errors propagate to the top-level caller.
Everything else is converted into a structured result at the runner or
subagent boundary so one failing tool never aborts a whole analysis.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum


class RunOutcome(StrEnum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class RevuError(Exception):
    """Base class for runtime errors."""


class CancellationError(RevuError):
    """User- or timeout-triggered abort. Never converted to a text result."""

    def __init__(self, message: str = "Operation cancelled", *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class FatalModelError(RevuError):
    """Model-side failure the caller should render with a dedicated message."""


class ModelNotSupportedError(FatalModelError):
    """The selected model cannot be used for tool-calling requests."""

    def __init__(self, model: str, detail: str = "") -> None:
        message = f"Model '{model}' is not supported"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.model = model


class SubagentLimitExceeded(RevuError):
    """Spawn rejected because the session budget is exhausted."""

    def __init__(self, max_subagents: int) -> None:
        super().__init__(
            f"Maximum subagents ({max_subagents}) reached for this session. "
            "Use direct tools for remaining investigations."
        )
        self.max_subagents = max_subagents


def is_cancellation(exc: BaseException) -> bool:
    """True for our CancellationError and for asyncio task cancellation."""
    return isinstance(exc, (CancellationError, asyncio.CancelledError))


def error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
