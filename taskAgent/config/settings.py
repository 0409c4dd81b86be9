"""Environment-bound configuration objects.

This module provides Pydantic BaseSettings-based configuration loading from .env files.
All settings classes automatically load from environment variables with support for
multiple alias names (e.g., MODEL_ID and OPENAI_MODEL both work).

Example:
    from taskAgent.config.settings import get_settings

    settings = get_settings()  # Cached singleton
    model = settings.backend.model
    max_turns = settings.governance.max_turns
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


load_dotenv()


class BackendSettings(BaseSettings):
    """Model backend selection and credentials.

    The provider name is looked up in the BackendRegistry when a Task is
    constructed. Only the context window and response size take part in
    budget calculations; everything else is passed through to the provider.
    """

    provider: str = Field(default="openai", validation_alias=AliasChoices("BACKEND_PROVIDER", "MODEL_PROVIDER"))
    model: str = Field(default="gpt-4o", validation_alias=AliasChoices("MODEL_ID", "OPENAI_MODEL", "MODEL"))
    api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MODEL_API_KEY", "OPENAI_API_KEY"),
    )
    base_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MODEL_BASE_URL", "OPENAI_BASE_URL"),
    )
    context_window: Optional[int] = Field(
        default=None,
        ge=1024,
        validation_alias=AliasChoices("MODEL_CONTEXT_WINDOW"),
    )
    max_tokens: int = Field(default=8192, ge=256, validation_alias=AliasChoices("MODEL_MAX_TOKENS", "MAX_COMPLETION_TOKENS"))
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, validation_alias=AliasChoices("MODEL_TEMPERATURE"))

    # Transient request failures are retried automatically before asking the user
    request_retry_limit: int = Field(default=2, ge=0, le=10, validation_alias=AliasChoices("REQUEST_RETRY_LIMIT"))
    request_retry_delay_seconds: float = Field(default=1.0, ge=0.0, validation_alias=AliasChoices("REQUEST_RETRY_DELAY"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class GovernanceSettings(BaseSettings):
    """Runtime governance and control settings.

    Controls task loop limits and policies:
    - max_turns: Turns before a task is abandoned (1-500, default: 100)
    - auto_approve_*: Skip approval for the read/edit/command tool groups
    - approval_timeout_seconds: Unanswered approvals count as rejections
    - consecutive_mistake_limit: Failing turns in a row before asking the user
    - require_todos_complete: Block completion while todo items are open
    - repetition_*: Sliding window used to reject repeated tool calls
    - delegation_mode: "sync" pauses the parent, "background" lets it continue
    """

    max_turns: int = Field(default=100, ge=1, le=500, alias="MAX_TURNS")
    auto_approve_reads: bool = Field(default=True, alias="AUTO_APPROVE_READS")
    auto_approve_writes: bool = Field(default=False, alias="AUTO_APPROVE_WRITES")
    auto_approve_commands: bool = Field(default=False, alias="AUTO_APPROVE_COMMANDS")
    approval_timeout_seconds: Optional[float] = Field(default=None, gt=0, alias="APPROVAL_TIMEOUT_SECONDS")
    consecutive_mistake_limit: int = Field(default=3, ge=1, le=50, alias="CONSECUTIVE_MISTAKE_LIMIT")
    require_todos_complete: bool = Field(default=True, alias="REQUIRE_TODOS_COMPLETE")

    repetition_threshold: int = Field(default=5, ge=1, alias="REPETITION_THRESHOLD")
    repetition_window_size: int = Field(default=10, ge=1, alias="REPETITION_WINDOW_SIZE")
    repetition_window_seconds: float = Field(default=300.0, gt=0, alias="REPETITION_WINDOW_SECONDS")

    tool_timeout_seconds: float = Field(default=120.0, gt=0, alias="TOOL_TIMEOUT_SECONDS")

    delegation_mode: Literal["sync", "background"] = Field(default="sync", alias="DELEGATION_MODE")
    max_delegation_depth: int = Field(default=3, ge=0, le=10, alias="MAX_DELEGATION_DEPTH")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class ContextManagementSettings(BaseSettings):
    """Context window budgeting and reduction settings.

    Token counts are estimated from characters; the buffer ratio is kept in
    reserve on top of the response size so the target limit always stays
    strictly below the model limit.
    """

    enabled: bool = Field(default=True, alias="CONTEXT_MANAGEMENT_ENABLED")

    # Usage levels reported from provider token counts
    info_threshold: float = Field(default=0.75, ge=0.0, le=1.0, alias="CONTEXT_INFO_THRESHOLD")
    warning_threshold: float = Field(default=0.85, ge=0.0, le=1.0, alias="CONTEXT_WARNING_THRESHOLD")
    critical_threshold: float = Field(default=0.95, ge=0.0, le=1.0, alias="CONTEXT_CRITICAL_THRESHOLD")

    token_buffer_ratio: float = Field(default=0.1, ge=0.0, lt=0.9, alias="CONTEXT_TOKEN_BUFFER_RATIO")
    chars_per_token: float = Field(default=4.0, gt=0.0, alias="CONTEXT_CHARS_PER_TOKEN")

    window_max_drop_ratio: float = Field(default=0.5, gt=0.0, le=1.0, alias="CONTEXT_WINDOW_MAX_DROP_RATIO")
    selective_protected_score: float = Field(default=5.0, alias="CONTEXT_SELECTIVE_PROTECTED_SCORE")
    summary_keep_recent_units: int = Field(default=2, ge=1, alias="CONTEXT_SUMMARY_KEEP_RECENT")
    summary_max_tokens: int = Field(default=1440, ge=128, alias="CONTEXT_SUMMARY_MAX_TOKENS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class ObservabilitySettings(BaseSettings):
    """Logging and persistence configuration.

    - Logging settings (LOG_LEVEL, LOG_DIR, LOG_PROMPT_MAX_LENGTH)
    - Task persistence (TASK_DB_PATH for SQLite storage)
    """

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="logs", alias="LOG_DIR")
    log_prompt_max_length: int = Field(default=500, ge=100, le=5000, alias="LOG_PROMPT_MAX_LENGTH")

    # Default: ./data/tasks.db (SQLite)
    task_db_path: str = Field(default="data/tasks.db", alias="TASK_DB_PATH")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class Settings(BaseSettings):
    """Root application settings loaded from .env file.

    Hierarchical structure containing four nested settings groups:
    - backend: Model provider and credentials (BackendSettings)
    - governance: Task loop controls (GovernanceSettings)
    - context: Context window management (ContextManagementSettings)
    - observability: Logging and persistence (ObservabilitySettings)

    Use get_settings() to obtain a cached singleton instance.
    """

    environment: str = Field(default="dev", alias="APP_ENV")
    default_mode: str = Field(default="code", alias="DEFAULT_MODE")
    default_protocol: Literal["native", "xml"] = Field(default="native", alias="DEFAULT_PROTOCOL")
    workspace_root: str = Field(default=".", validation_alias=AliasChoices("AGENT_WORKSPACE_PATH", "WORKSPACE_ROOT"))

    backend: BackendSettings = Field(default_factory=BackendSettings)
    governance: GovernanceSettings = Field(default_factory=GovernanceSettings)
    context: ContextManagementSettings = Field(default_factory=ContextManagementSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        case_sensitive=False,
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton Settings instance.

    Returns:
        Settings: Cached application settings instance
    """
    return Settings()
