"""Settings via pydantic-settings with REVU_ env prefix.

Anthropic credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) that other tooling
uses, so a single .env file works for both.

Runtime components hold a reference to the Settings instance and read
limits at call time, so changing a field mid-session takes effect on the
next check.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ContentType = Literal["diff", "embedding", "lsp-reference", "lsp-definition"]

DEFAULT_CONTENT_ORDER: list[ContentType] = [
    "diff",
    "embedding",
    "lsp-reference",
    "lsp-definition",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REVU_", env_file=".env")

    log_level: str = "info"

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    max_input_tokens: int = 200_000
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Analysis limits
    max_iterations: int = 10  # Model round trips per conversation
    max_tool_calls: int = 50  # Per ToolExecutor instance
    max_subagents_per_session: int = 5
    subagent_max_iterations: int | None = None  # None -> max_iterations
    request_timeout_seconds: int = 60  # Per subagent investigation

    # Token budget
    content_order: list[ContentType] = Field(
        default_factory=lambda: list(DEFAULT_CONTENT_ORDER)
    )
    safety_margin_ratio: float = 0.95
    context_warning_ratio: float = 0.9
    context_cleanup_ratio: float = 0.8
    max_tool_response_chars: int = 8000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if sorted(self.content_order) != sorted(DEFAULT_CONTENT_ORDER):
            raise ValueError(
                f"content_order must be a permutation of {DEFAULT_CONTENT_ORDER}, "
                f"got {self.content_order}"
            )
        for name in ("max_iterations", "max_tool_calls", "request_timeout_seconds"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.max_subagents_per_session < 0:
            raise ValueError("max_subagents_per_session must be >= 0")
        if not 0.0 < self.safety_margin_ratio <= 1.0:
            raise ValueError("safety_margin_ratio must be in (0, 1]")
        if self.context_cleanup_ratio >= self.context_warning_ratio:
            raise ValueError(
                f"context_cleanup_ratio ({self.context_cleanup_ratio}) must be < "
                f"context_warning_ratio ({self.context_warning_ratio})"
            )
        return self

    @property
    def effective_subagent_iterations(self) -> int:
        return self.subagent_max_iterations or self.max_iterations
