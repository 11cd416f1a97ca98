"""Settings via pydantic-settings with CLODDS_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, OPENAI_API_KEY) the provider SDKs use, so a
single .env file works for every tool on the box.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Fields that ConversationOrchestrator.reload_config() may swap at runtime.
RELOADABLE: frozenset[str] = frozenset({
    "rate_limit_enabled",
    "rate_limit_per_participant",
    "rate_limit_window",
    "rate_limit_max_requests",
    "compact_threshold",
    "warning_threshold",
    "min_recent_turns",
    "stream_flush_interval",
    "tool_notice_delay",
    "model_max_retries",
    "retry_base_delay",
    "retry_max_delay",
    "max_turns",
    "max_tokens",
    "subagent_progress_interval",
})


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CLODDS_", env_file=".env", extra="ignore")

    agent_id: str = "clodds"
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    model: str = "claude-sonnet-4-5-20250514"
    background_model: str = "claude-haiku-4-5-20251001"  # summarizer
    max_tokens: int = 4096  # output cap per model submission
    system_prompt: str = (
        "You are Clodds, an assistant for prediction markets and trading. "
        "Use the available tools to look things up instead of guessing."
    )
    max_system_tokens: int = 8000

    # Tool loop
    max_turns: int = 10  # model submissions per user turn
    tool_notice_delay: float = 2.0  # seconds before a "running" notice
    tool_result_max_tokens: int = 8000
    model_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Context window
    context_max_tokens: int = 128000
    context_reserve_tokens: int = 4096
    compact_threshold: float = 0.85
    warning_threshold: float = 0.8
    min_recent_turns: int = 10
    keep_recent_ratio: float = 0.3  # share of the budget the verbatim head may use
    summary_input_tokens: int = 4000
    summary_max_depth: int = 3
    summary_max_tokens: int = 500

    # Semantic dedupe before summarization
    dedupe_enabled: bool = False
    dedupe_threshold: float = 0.92
    dedupe_window: int = 12
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 256  # inputs per embeddings request

    # Admission control
    rate_limit_enabled: bool = True
    rate_limit_per_participant: bool = True
    rate_limit_window: float = 60.0  # seconds
    rate_limit_max_requests: int = 20
    rate_limit_sweep_interval: float = 60.0

    # Streaming
    stream_flush_interval: float = 1.2  # min seconds between message edits
    max_message_length: int = 4000

    # Sessions
    max_sessions: int = 100

    # Subagents
    subagent_max_turns: int = 10
    subagent_timeout: float = 300.0  # seconds
    subagent_progress_interval: float = 5.0
    subagent_keep_finished: int = 200
    subagent_thinking_mode: Literal["none", "basic", "chain-of-thought"] = "none"

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        if self.context_reserve_tokens >= self.context_max_tokens:
            raise ValueError(
                f"context_reserve_tokens ({self.context_reserve_tokens}) must be < "
                f"context_max_tokens ({self.context_max_tokens})"
            )
        if not 0 < self.compact_threshold <= 1:
            raise ValueError("compact_threshold must be in (0, 1]")
        if self.warning_threshold > self.compact_threshold:
            raise ValueError("warning_threshold must be <= compact_threshold")
        if self.min_recent_turns < 1:
            raise ValueError("min_recent_turns must be >= 1")
        return self

    @property
    def effective_context_tokens(self) -> int:
        return self.context_max_tokens - self.context_reserve_tokens
