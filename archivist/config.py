"""Settings via pydantic-settings with ARCHIVIST_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that a Postgres container reads, so a
single .env file drives both.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ARCHIVIST_", env_file=".env")

    # Storage
    storage_backend: Literal["memory", "sql"] = "memory"
    database_url: str = ""  # overrides the DB_* fields when set

    # DB connection: unprefixed aliases match the Postgres container env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("archivist", validation_alias="DB_USER")
    db_password: str = Field("archivist_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("archivist", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # LLM provider (OpenAI-compatible chat completions API)
    llm_api_key: str = Field("", validation_alias="LLM_API_KEY")
    llm_base_url: str = "https://api.deepseek.com/v1"
    model: str = "deepseek-chat"
    temperature: float | None = None
    summary_temperature: float = 0.3
    summary_max_tokens: int = 500
    api_timeout_connect: int = 30  # seconds
    api_timeout_read: int = 120  # seconds

    # Orchestration
    max_iterations: int = 10  # Max model calls per chat turn
    tool_timeout: float = 60.0  # seconds per tool invocation
    workspace_dir: str = "/tmp/archivist-workspace"

    # History compression defaults (per-conversation settings override these)
    compression_enabled: bool = False
    compression_message_threshold: int = 10
    compression_keep_recent: int = 4

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8080

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.compression_keep_recent >= self.compression_message_threshold:
            raise ValueError(
                f"compression_keep_recent ({self.compression_keep_recent}) must be < "
                f"compression_message_threshold ({self.compression_message_threshold})"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
