from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class TokenStorageBackend(str, Enum):
    """Where the bearer and refresh tokens survive a process restart."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def _default_token_file() -> str:
    return str(Path.home() / ".consolegate" / "tokens.json")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the console auth core."""

    api_base_url: str = env_field("http://localhost:3000", "CONSOLE_API_URL")
    request_timeout_seconds: float = env_field(
        30.0,
        "CONSOLE_REQUEST_TIMEOUT",
        description="Timeout applied to every call to the authentication service",
    )
    token_storage: TokenStorageBackend = env_field(
        TokenStorageBackend.FILE, "CONSOLE_TOKEN_STORAGE"
    )
    token_file_path: str = env_field(
        _default_token_file(),
        "CONSOLE_TOKEN_FILE",
        description="JSON file holding persisted tokens when token_storage=file",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    token_namespace: str = env_field(
        "consolegate", "CONSOLE_TOKEN_NAMESPACE", description="Redis key prefix"
    )
    login_route: str = env_field("/login", "CONSOLE_LOGIN_ROUTE")
    landing_route: str = env_field("/dashboard", "CONSOLE_LANDING_ROUTE")
    redirect_after_login: bool = env_field(
        False,
        "CONSOLE_REDIRECT_AFTER_LOGIN",
        description="Send the operator back to the originally requested route after sign-in",
    )
    mfa_max_attempts: Optional[int] = env_field(
        None,
        "CONSOLE_MFA_MAX_ATTEMPTS",
        description="Rejected codes allowed per login challenge; unset means unlimited",
    )
    action_token_header: str = env_field("X-MFA-Action-Token", "CONSOLE_ACTION_TOKEN_HEADER")
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("token_storage")
    @classmethod
    def _validate_token_storage(cls, value: TokenStorageBackend) -> TokenStorageBackend:
        return TokenStorageBackend(value)

    @field_validator("login_route", "landing_route")
    @classmethod
    def _validate_route(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError("routes must be absolute internal paths")
        return value

    @field_validator("mfa_max_attempts", mode="before")
    @classmethod
    def _empty_attempts_is_unlimited(cls, value: Any) -> Any:
        if value in ("", "0", 0, "none", "None"):
            return None
        return value

    @field_validator("mfa_max_attempts")
    @classmethod
    def _validate_attempts(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("mfa_max_attempts must be positive")
        return value


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
