"""Settings via pydantic-settings with RACHEL_ env prefix.

Anthropic credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the rest of the
deployment uses, so a single .env file drives everything.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OVERFLOW_PATTERNS = [
    "prompt is too long",
    "too many tokens",
    "context length",
    "request too large",
    "maximum context",
    "token limit",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RACHEL_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    sessions_dir: str = "/tmp/rachel/sessions"

    # Context management
    max_context_tokens: int = 180_000
    compaction_threshold: float = Field(0.70, gt=0.0, le=1.0)
    compaction_keep_recent_turns: int = Field(10, ge=0)
    compaction_keep_head: int = Field(2, ge=0)
    chars_per_token: int = Field(4, ge=1)

    # Summarization
    summary_min_chars: int = 500
    summary_fallback_chars: int = 2000
    summary_timeout: float = 120.0  # seconds
    summary_model: str = ""  # empty -> use model

    # Turn execution
    prompt_timeout: float = 600.0  # seconds, 10 minutes
    max_turns: int = 10  # Max tool use iterations per turn
    overflow_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_OVERFLOW_PATTERNS)
    )
    system_prompt: str = "You are Rachel, a helpful personal assistant."

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        if self.summary_fallback_chars <= 0:
            raise ValueError("summary_fallback_chars must be positive")
        if self.max_context_tokens <= self.max_tokens:
            raise ValueError(
                f"max_context_tokens ({self.max_context_tokens}) must be > "
                f"max_tokens ({self.max_tokens})"
            )
        return self

    @property
    def compaction_trigger_tokens(self) -> float:
        """Estimated token count above which history gets compacted."""
        return self.max_context_tokens * self.compaction_threshold

    @property
    def effective_summary_model(self) -> str:
        return self.summary_model or self.model
