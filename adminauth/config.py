from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from adminauth.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class AuthSettings(BaseModel):
    """Validated configuration for the administrator authentication core."""

    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    token_issuer: str = env_field("avigate-admin", "TOKEN_ISSUER")
    token_audience: str = env_field("avigate-admin-panel", "TOKEN_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        15 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of access tokens",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Lifetime of refresh tokens and of the sessions they back",
    )
    password_reset_ttl_seconds: int = env_field(
        60 * 60,
        "PASSWORD_RESET_TTL_SECONDS",
        description="Lifetime of single-use password reset tokens",
    )
    invite_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "INVITE_TTL_SECONDS",
        description="Lifetime of single-use administrator invitation tokens",
    )
    token_leeway_seconds: int = env_field(
        0, "TOKEN_LEEWAY_SECONDS", description="Clock skew tolerated on expiry"
    )
    max_failed_attempts: int = env_field(
        5,
        "MAX_FAILED_ATTEMPTS",
        description="Wrong passwords tolerated before the account locks",
    )
    lockout_seconds: int = env_field(
        15 * 60, "LOCKOUT_SECONDS", description="Lockout cooldown"
    )
    totp_issuer: str = env_field("Avigate", "TOTP_ISSUER")
    totp_valid_window: int = env_field(
        1,
        "TOTP_VALID_WINDOW",
        description="Adjacent 30s steps accepted on each side of the current one",
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    max_sessions_per_principal: int = env_field(5, "MAX_SESSIONS_PER_PRINCIPAL")
    allowed_email_domain: str | None = env_field(
        None,
        "ALLOWED_EMAIL_DOMAIN",
        description="Restrict administrator logins to one email domain",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON file backing the in-process credential store",
    )
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets written to STATE_PATH",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/admin/auth", "REFRESH_COOKIE_PATH")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Avigate Admin", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "AuthSettings":
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

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "password_reset_ttl_seconds",
        "invite_ttl_seconds",
        "max_failed_attempts",
        "lockout_seconds",
        "backup_code_count",
        "max_sessions_per_principal",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("token_leeway_seconds", "totp_valid_window")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("allowed_email_domain")
    @classmethod
    def _normalize_domain(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.strip().lstrip("@").lower() or None

    @model_validator(mode="after")
    def _check_token_secrets(self) -> "AuthSettings":
        if self.test_mode:
            # throwaway keys; tokens do not survive a restart
            if not self.access_token_secret:
                self.access_token_secret = secrets.token_urlsafe(48)
            if not self.refresh_token_secret:
                self.refresh_token_secret = secrets.token_urlsafe(48)
        if not self.access_token_secret or not self.refresh_token_secret:
            raise ValueError(
                "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must both be set"
            )
        if (
            len(self.access_token_secret) < MIN_SECRET_LENGTH
            or len(self.refresh_token_secret) < MIN_SECRET_LENGTH
        ):
            raise ValueError(
                f"token secrets must be at least {MIN_SECRET_LENGTH} characters long"
            )
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            logger.warning(
                "refresh_ttl_not_longer_than_access",
                access_ttl=self.access_token_ttl_seconds,
                refresh_ttl=self.refresh_token_ttl_seconds,
            )
        return self


def get_settings() -> AuthSettings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = AuthSettings.from_env()
    return _settings_cache


_settings_cache: AuthSettings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
