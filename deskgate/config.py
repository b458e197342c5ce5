from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from deskgate.logging import get_logger

logger = get_logger(__name__)


class IdentityBackend(str, Enum):
    """Where email/password verification is delegated."""

    SUPABASE = "supabase"
    LOCAL = "local"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the sign-in service."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: memory store and console code delivery allowed.",
    )

    # Identity provider
    identity_backend: IdentityBackend = env_field(
        IdentityBackend.SUPABASE, "IDENTITY_BACKEND"
    )
    supabase_url: str | None = env_field(None, "SUPABASE_URL")
    supabase_anon_key: str | None = env_field(None, "SUPABASE_ANON_KEY")

    # Human verification
    captcha_secret: str | None = env_field(None, "HCAPTCHA_SECRET")
    captcha_site_key: str | None = env_field(None, "HCAPTCHA_SITE_KEY")
    captcha_verify_url: str = env_field(
        "https://api.hcaptcha.com/siteverify", "HCAPTCHA_VERIFY_URL"
    )

    # Privileged operator, provisioned out-of-band (secret store / env)
    operator_email: str | None = env_field(None, "OPERATOR_EMAIL")
    operator_password: str | None = env_field(None, "OPERATOR_PASSWORD")
    admin_fast_path_enabled: bool = env_field(
        False,
        "ADMIN_FAST_PATH_ENABLED",
        description="Let the operator skip MFA on the admin path; keep off in production.",
    )

    # One-time codes
    mfa_code_digits: int = env_field(6, "MFA_CODE_DIGITS", ge=4, le=10)
    mfa_code_ttl_seconds: int = env_field(600, "MFA_CODE_TTL_SECONDS", gt=0)
    mfa_resend_cooldown_seconds: int = env_field(30, "MFA_RESEND_COOLDOWN_SECONDS", ge=0)
    mfa_max_issuances: int = env_field(3, "MFA_MAX_ISSUANCES", ge=1)
    mfa_resend_window_seconds: int = env_field(
        3600,
        "MFA_RESEND_WINDOW_SECONDS",
        gt=0,
        description="Issuance counter resets once this long has passed since the first code of a window.",
    )

    # Sessions
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES", gt=0)
    session_idle_timeout_minutes: int = env_field(30, "SESSION_IDLE_TIMEOUT_MINUTES", gt=0)
    session_history_days: int = env_field(
        7, "SESSION_HISTORY_DAYS", gt=0, description="Retention of ended session records."
    )

    # Bound on every call to the identity provider, captcha verifier and notifier
    provider_timeout_seconds: float = env_field(10.0, "PROVIDER_TIMEOUT_SECONDS", gt=0)

    # Code delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Service Desk", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("identity_backend")
    @classmethod
    def _validate_identity_backend(cls, value: IdentityBackend) -> IdentityBackend:
        return IdentityBackend(value)

    @field_validator("operator_email")
    @classmethod
    def _normalize_operator_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _check_fast_path(self) -> "Settings":
        if self.admin_fast_path_enabled and not (
            self.operator_email and self.operator_password
        ):
            raise ValueError(
                "ADMIN_FAST_PATH_ENABLED requires OPERATOR_EMAIL and OPERATOR_PASSWORD"
            )
        if self.admin_fast_path_enabled:
            logger.warning(
                "admin_fast_path_enabled",
                message="Operator sign-in skips MFA; disable in production.",
            )
        return self


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
