from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    config_path: str = "~/.ccrouter/config.json"
    host: str = "127.0.0.1"
    port: int = 3456
    upstream_timeout_seconds: float = 600.0
    upstream_connect_timeout_seconds: float = 5.0
    credential_timeout_seconds: float = 30.0
    credential_source: Literal["default", "cli"] = "default"
    azure_scope: str = "https://cognitiveservices.azure.com/.default"
    azure_api_version: str = "2024-10-21"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
