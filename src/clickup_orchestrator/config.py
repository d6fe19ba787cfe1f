"""Configuration for the ClickUp orchestrator."""

from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Config(BaseSettings):
    """Application configuration.

    Values that users change at runtime (poll targets, parallel limit, prompts)
    are kept in the settings table instead, so they apply without a restart.
    """

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5150)
    database_path: Path = Field(default=Path("orchestrator.db"))
    poll_interval_seconds: float = Field(default=5.0)
    poll_backoff_max_seconds: float = Field(default=60.0)
    kill_grace_seconds: float = Field(default=5.0)
    scheduler_enabled: bool = Field(default=True)
    replay_buffer_lines: int = Field(default=2000)
    use_pty: bool = Field(default=True)
    env_file_path: Path = Field(default=Path(".env"))
    clickup_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("CLICKUP_API_KEY", "clickup_api_key"),
    )
    clickup_api_base: str = Field(default="https://api.clickup.com/api/v2")
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(sorted(LOG_LEVELS))}")
        return normalized

    @field_validator("poll_interval_seconds", "kill_grace_seconds")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value
