from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the workflow engine and its collaborators."""

    # Model provider (OpenAI-compatible chat completions)
    default_model: str = env_field("gpt-4o-mini", "DEFAULT_MODEL")
    model_api_key: str | None = env_field(None, "MODEL_API_KEY")
    model_base_url: str = env_field("https://api.openai.com/v1", "MODEL_BASE_URL")
    model_timeout_seconds: float = env_field(60.0, "MODEL_TIMEOUT_SECONDS")

    # Node execution
    script_timeout_ms: int = env_field(
        30000, "SCRIPT_TIMEOUT_MS", description="Default timeout for script nodes"
    )
    script_max_memory_mb: int = env_field(256, "SCRIPT_MAX_MEMORY_MB")
    script_max_cpu_seconds: int = env_field(10, "SCRIPT_MAX_CPU_SECONDS")
    http_timeout_seconds: float = env_field(30.0, "HTTP_TIMEOUT_SECONDS")
    http_allowlist: list[str] = env_field(
        [],
        "HTTP_ALLOWLIST",
        description="Comma-separated hosts, wildcards or CIDRs http nodes may call; empty allows all",
    )
    http_proxy_url: str | None = env_field(None, "HTTP_PROXY_URL")
    workflow_timeout_ms: int = env_field(300000, "WORKFLOW_TIMEOUT_MS")
    max_delegation_depth: int = env_field(3, "MAX_DELEGATION_DEPTH")

    # Email notifications
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Stepflow", "EMAIL_FROM_NAME")

    # Scheduler
    scheduler_enabled: bool = env_field(True, "SCHEDULER_ENABLED")
    scheduler_sync_interval_seconds: int = env_field(
        300,
        "SCHEDULER_SYNC_INTERVAL_SECONDS",
        description="How often the schedule registry re-reads agent definitions",
    )
    scheduler_trigger_input: str = env_field(
        "Auto-triggered by scheduler", "SCHEDULER_TRIGGER_INPUT"
    )

    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

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

    @field_validator("http_allowlist", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("max_delegation_depth")
    @classmethod
    def _validate_depth(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_delegation_depth must be >= 0")
        return value

    @field_validator("script_timeout_ms", "workflow_timeout_ms")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeouts must be positive")
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
