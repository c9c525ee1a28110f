"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openrouter_api_key: str = Field(..., alias="OPENROUTER_API_KEY")
    openrouter_model: str = Field(..., alias="OPENROUTER_MODEL")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    feishu_app_id: str = Field(..., alias="FEISHU_APP_ID")
    feishu_app_secret: str = Field(..., alias="FEISHU_APP_SECRET")
    feishu_base_url: str = Field(default="https://open.feishu.cn/open-apis", alias="FEISHU_BASE_URL")
    database_path: Path = Field(default=Path("taskbridge.db"), alias="DATABASE_PATH")

    # Every external call carries an explicit timeout.
    messenger_timeout_seconds: float = Field(default=10.0, alias="MESSENGER_TIMEOUT_SECONDS")
    llm_timeout_seconds: float = Field(default=60.0, alias="LLM_TIMEOUT_SECONDS")

    session_ttl_seconds: float = Field(default=300.0, alias="SESSION_TTL_SECONDS")
    dedup_ttl_seconds: float = Field(default=300.0, alias="DEDUP_TTL_SECONDS")
    dedup_max_entries: int = Field(default=5000, alias="DEDUP_MAX_ENTRIES")
    dedup_sweep_interval_seconds: float = Field(default=60.0, alias="DEDUP_SWEEP_INTERVAL_SECONDS")

    history_window_messages: int = Field(default=20, alias="HISTORY_WINDOW_MESSAGES")
    agent_max_rounds: int = Field(default=5, alias="AGENT_MAX_ROUNDS")
    agent_max_concurrency: int = Field(default=10, alias="AGENT_MAX_CONCURRENCY")
    agent_queue_timeout_seconds: float = Field(default=5.0, alias="AGENT_QUEUE_TIMEOUT_SECONDS")

    default_deadline_days: int = Field(default=3, alias="DEFAULT_DEADLINE_DAYS")

    webhook_host: str = Field(default="0.0.0.0", alias="WEBHOOK_HOST")
    webhook_port: int = Field(default=3456, alias="WEBHOOK_PORT")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
