from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ticketgate.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Where tickets, OTP codes and refresh tokens are kept."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the sign-in and ticket engine."""

    # Storage
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/ticketgate", "SHARED_FS_ROOT")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (pre-registered OAuth codes, log-only delivery).",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("ticketgate", "JWT_ISSUER")
    jwt_audience: str = env_field("ticketgate-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS", ge=1)
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", ge=1
    )

    # Password policy
    min_password_length: int = env_field(9, "MIN_PASSWORD_LENGTH", ge=1)
    breach_check_enabled: bool = env_field(
        False,
        "BREACH_CHECK_ENABLED",
        description="Reject passwords reported by the breached-password range API",
    )
    breach_check_fail_open: bool = env_field(
        False,
        "BREACH_CHECK_FAIL_OPEN",
        description="Accept passwords when the breach lookup is unavailable (default rejects)",
    )
    breach_api_url: str = env_field(
        "https://api.pwnedpasswords.com/range/", "BREACH_API_URL"
    )
    outbound_timeout_seconds: float = env_field(
        10.0,
        "OUTBOUND_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for breach lookups, email/SMS delivery and provider calls",
    )

    # Feature flags
    email_password_enabled: bool = env_field(True, "EMAIL_PASSWORD_ENABLED")
    anonymous_users_enabled: bool = env_field(False, "ANONYMOUS_USERS_ENABLED")
    passwordless_email_enabled: bool = env_field(False, "PASSWORDLESS_EMAIL_ENABLED")
    passwordless_sms_enabled: bool = env_field(False, "PASSWORDLESS_SMS_ENABLED")
    mfa_enabled: bool = env_field(True, "MFA_ENABLED")
    email_verification_required: bool = env_field(False, "EMAIL_VERIFICATION_REQUIRED")
    disable_new_users: bool = env_field(
        False,
        "DISABLE_NEW_USERS",
        description="Users created through passwordless or provider sign-up start disabled",
    )
    passwordless_auto_signup: bool = env_field(
        True,
        "PASSWORDLESS_AUTO_SIGNUP",
        description="Create a user on first passwordless or provider sign-in",
    )

    # Ticket lifetimes
    otp_ttl_seconds: int = env_field(5 * 60, "OTP_TTL_SECONDS", ge=1)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    passwordless_ticket_ttl_seconds: int = env_field(
        60 * 60, "PASSWORDLESS_TICKET_TTL_SECONDS", ge=1
    )
    mfa_ticket_ttl_seconds: int = env_field(5 * 60, "MFA_TICKET_TTL_SECONDS", ge=1)
    email_change_ticket_ttl_seconds: int = env_field(
        60 * 60, "EMAIL_CHANGE_TICKET_TTL_SECONDS", ge=1
    )
    totp_time_step_seconds: int = env_field(30, "TOTP_TIME_STEP_SECONDS", ge=1)
    totp_window: int = env_field(1, "TOTP_WINDOW", ge=0)
    totp_issuer: str = env_field("ticketgate", "TOTP_ISSUER")

    # Users
    default_locale: str = env_field("en", "DEFAULT_LOCALE")
    default_role: str = env_field("user", "DEFAULT_ROLE")

    # URLs
    client_url: str = env_field("http://localhost:3000", "CLIENT_URL")
    server_url: str = env_field("http://localhost:4000", "SERVER_URL")
    allowed_redirect_urls: list[str] = env_field([], "ALLOWED_REDIRECT_URLS")

    # Email delivery
    emails_enabled: bool = env_field(True, "EMAILS_ENABLED")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ticketgate", "EMAIL_FROM_NAME")

    # SMS delivery (Twilio-compatible messages endpoint)
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_account_sid: str | None = env_field(None, "SMS_ACCOUNT_SID")
    sms_auth_token: str | None = env_field(None, "SMS_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")

    # OAuth providers
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("allowed_redirect_urls", mode="before")
    @classmethod
    def _split_redirect_urls(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/ticketgate"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            if secret_path.exists() and not secret_path.is_symlink():
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
        except OSError as exc:
            logger.warning("jwt_secret_read_failed", error=str(exc), path=str(fs_root))

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def configured_providers(self) -> set[str]:
        providers = set()
        if self.oauth_google_client_id and self.oauth_google_client_secret:
            providers.add("google")
        if self.oauth_github_client_id and self.oauth_github_client_secret:
            providers.add("github")
        return providers


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
