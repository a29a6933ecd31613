from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LocalSettings(BaseSettings):
    """Configuration for the local (fast-path) S3 store."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    endpoint: str = Field(
        default="http://127.0.0.1:9000",
        validation_alias="S3_READTHROUGH_LOCAL_ENDPOINT",
    )
    access_key: str = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "S3_READTHROUGH_LOCAL_ACCESS_KEY",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "S3_READTHROUGH_LOCAL_SECRET_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias="S3_READTHROUGH_LOCAL_SESSION_TOKEN",
    )
    region: str = Field(
        default="us-east-1",
        validation_alias="S3_READTHROUGH_LOCAL_REGION",
    )
    bucket: str = Field(
        default="cache",
        validation_alias="S3_READTHROUGH_LOCAL_BUCKET",
    )
    bucket_location: str = Field(
        default="us-east-1",
        validation_alias="S3_READTHROUGH_DEFAULT_BUCKET_LOCATION",
    )


class ProxySettings(BaseSettings):
    """Process-wide proxy behaviour, fixed for the lifetime of the process."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    config_source: Literal["env", "bucket"] = Field(
        default="env",
        validation_alias="S3_READTHROUGH_CONFIG_SOURCE",
    )
    config_bucket: str | None = Field(
        default=None,
        validation_alias="S3_READTHROUGH_CONFIG_BUCKET",
    )
    config_prefix: str = Field(
        default="",
        validation_alias="S3_READTHROUGH_CONFIG_PREFIX",
    )
    max_object_size: int = Field(
        default=64 * 1024 * 1024,
        gt=0,
        validation_alias="S3_READTHROUGH_MAX_OBJECT_SIZE",
    )
    coalesce_misses: bool = Field(
        default=False,
        validation_alias="S3_READTHROUGH_COALESCE_MISSES",
    )
    require_read_auth: bool = Field(
        default=False,
        validation_alias="S3_READTHROUGH_REQUIRE_READ_AUTH",
    )
    write_tokens: str = Field(
        default="",
        validation_alias="S3_READTHROUGH_WRITE_TOKENS",
    )
    sync_queue_kind: Literal["none", "sqs", "http"] = Field(
        default="none",
        validation_alias="S3_READTHROUGH_SYNC_QUEUE_KIND",
    )
    sync_queue_url: str | None = Field(
        default=None,
        validation_alias="S3_READTHROUGH_SYNC_QUEUE_URL",
    )
    sync_queue_region: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_READTHROUGH_SYNC_QUEUE_REGION",
            "AWS_REGION",
        ),
    )
    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = Field(
        default="INFO",
        validation_alias="S3_READTHROUGH_LOG_LEVEL",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def write_token_list(self) -> list[str]:
        """Shared write secrets, parsed from a comma separated list."""
        tokens = (token.strip() for token in self.write_tokens.split(","))
        return [token for token in tokens if token]


def load_local_settings_from_env() -> LocalSettings:
    """Load local store settings from environment variables."""
    return LocalSettings()


def load_proxy_settings_from_env() -> ProxySettings:
    """Load proxy behaviour settings from environment variables."""
    return ProxySettings()
