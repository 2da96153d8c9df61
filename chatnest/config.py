from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatnest.logging import get_logger

logger = get_logger(__name__)


class ProviderKind(str, Enum):
    """Completion provider implementations the relay can drive."""

    OPENAI = "openai"
    STUB = "stub"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the relay server."""

    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    chat_model: str = env_field("gpt-4o-mini", "CHAT_MODEL")
    provider: ProviderKind = env_field(
        ProviderKind.OPENAI,
        "CHAT_PROVIDER",
        description="openai, or stub for deterministic local runs; "
        "openai without an API key falls back to stub",
    )
    heartbeat_interval_seconds: float = env_field(
        15.0,
        "HEARTBEAT_INTERVAL_SECONDS",
        description="Seconds between ping frames on an open stream",
    )
    stub_fragment_delay_seconds: float = env_field(0.0, "STUB_FRAGMENT_DELAY_SECONDS")
    cors_allow_origins: List[str] = env_field(
        [], "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed origins"
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets between tests",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> ProviderKind:
        if isinstance(value, str):
            value = value.strip().lower()
        return ProviderKind(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("heartbeat_interval_seconds")
    @classmethod
    def _validate_heartbeat(cls, value: float) -> float:
        if value <= 0:
            logger.warning(
                "heartbeat_interval_invalid",
                heartbeat_interval_seconds=value,
                message="Non-positive heartbeat interval; defaulting to 15 seconds",
            )
            return 15.0
        return value

    @property
    def effective_provider(self) -> ProviderKind:
        if self.provider == ProviderKind.OPENAI and not self.openai_api_key:
            return ProviderKind.STUB
        return self.provider


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
