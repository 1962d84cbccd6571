"""
Configuration loading and validation.

Loads sync configuration from a YAML file with environment variable resolution
for secrets (the Supabase key is never stored in config files).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator


class SupabaseConfig(BaseModel):
    url: str = "http://localhost:54321"
    api_key_env: str = "SUPABASE_ANON_KEY"
    verify_tls: bool = True
    request_timeout_seconds: int = 30

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class PollingConfig(BaseModel):
    interval_seconds: float = 10.0
    cache_ttl_seconds: float = 8.0
    max_reconnect_attempts: int = 5
    reconnect_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 60.0
    conversation_fanout_limit: int = 10

    @field_validator(
        "interval_seconds",
        "cache_ttl_seconds",
        "reconnect_delay_seconds",
        "reconnect_max_delay_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("max_reconnect_attempts", "conversation_fanout_limit")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090


class SyncConfig(BaseModel):
    supabase: SupabaseConfig = Field(default_factory=SupabaseConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> SyncConfig:
    """Load and validate sync configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return SyncConfig.model_validate(raw)
