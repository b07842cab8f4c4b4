"""
Configuration loading and validation.

Loads client configuration from YAML file with environment variable resolution
for secrets (the anon key is never stored in config files).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendConfig(BaseModel):
    url: str = "http://localhost:54321"
    anon_key_env: str = "VH_ANON_KEY"
    verify_tls: bool = True
    request_timeout_seconds: int = 30

    @property
    def anon_key(self) -> str | None:
        return os.environ.get(self.anon_key_env)


class RealtimeConfig(BaseModel):
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0


class AuthConfig(BaseModel):
    # Upper bound for waiting on the new profile row after sign-up
    readiness_timeout_seconds: float = 1.5
    readiness_poll_interval_seconds: float = 0.25


class CacheConfig(BaseModel):
    gc_seconds: float = 300.0


class RoutesConfig(BaseModel):
    login: str = "/login"
    organization: str = "/organization/dashboard"
    volunteer: str = "/volunteer/dashboard"


class StateConfig(BaseModel):
    db_path: str = "./data/session.db"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class ClientConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    routes: RoutesConfig = Field(default_factory=RoutesConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    status_interval_seconds: float = 30.0


class ClientSettings(BaseSettings):
    """Process-level settings for the CLI, read from the environment."""

    model_config = SettingsConfigDict(env_prefix="VH_", env_file=".env", extra="ignore")

    config_path: str = "volunteer-hub.yaml"
    email: str = ""
    password: str = ""


def load_config(path: str | Path) -> ClientConfig:
    """Load and validate client configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return ClientConfig.model_validate(raw)
