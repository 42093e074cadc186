from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from sessionguard.logging import get_logger
from sessionguard.service.errors import ConfigurationError

logger = get_logger(__name__)

# Claims the codec writes itself; the security stamp claim may not shadow them
RESERVED_CLAIMS = frozenset(
    {
        "sub",
        "email",
        "jti",
        "unique_name",
        "iss",
        "aud",
        "exp",
        "nbf",
        "iat",
        "role",
        "permission",
    }
)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _validate_redirect_uri(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError(f"redirect URI must be http(s): {uri}")
    if not parsed.netloc:
        raise ValueError(f"redirect URI must include host: {uri}")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError(f"insecure redirect URI not allowed outside localhost: {uri}")
    return uri


class Settings(BaseModel):
    """Runtime settings; every invariant is checked when the model is built."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    # Access tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    access_token_lifetime_minutes: int = env_field(
        10, "ACCESS_TOKEN_LIFETIME_MINUTES", ge=1, le=120
    )
    security_stamp_claim: str = env_field("security_stamp", "SECURITY_STAMP_CLAIM")

    # Refresh tokens
    refresh_persistent_lifetime_days: int = env_field(
        7,
        "REFRESH_PERSISTENT_LIFETIME_DAYS",
        ge=1,
        le=365,
        description="Lifetime of refresh tokens issued with remember-me",
    )
    refresh_session_lifetime_minutes: int = env_field(
        24 * 60,
        "REFRESH_SESSION_LIFETIME_MINUTES",
        ge=10,
        le=30 * 24 * 60,
        description="Lifetime of refresh tokens issued without remember-me",
    )

    # Password login lockout
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", ge=1, le=100)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1, le=24 * 60)

    # Two-factor
    two_factor_challenge_lifetime_minutes: int = env_field(
        5, "TWO_FACTOR_CHALLENGE_LIFETIME_MINUTES", ge=1, le=30
    )
    two_factor_max_failed_attempts: int = env_field(
        5, "TWO_FACTOR_MAX_FAILED_ATTEMPTS", ge=1, le=20
    )
    two_factor_issuer: str = env_field("SessionGuard", "TWO_FACTOR_ISSUER")
    two_factor_encryption_key: str | None = env_field(None, "TWO_FACTOR_ENCRYPTION_KEY")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT", ge=1, le=50)

    # External providers
    external_state_lifetime_minutes: int = env_field(
        10, "EXTERNAL_STATE_LIFETIME_MINUTES", ge=1, le=30
    )
    external_allowed_redirect_uris: list[str] = env_field(
        [], "EXTERNAL_ALLOWED_REDIRECT_URIS"
    )
    provider_timeout_seconds: float = env_field(30.0, "PROVIDER_TIMEOUT_SECONDS", gt=0)
    oauth_google_enabled: bool = env_field(False, "OAUTH_GOOGLE_ENABLED")
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_enabled: bool = env_field(False, "OAUTH_GITHUB_ENABLED")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")

    # Cookies
    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")

    retention_sweep_interval_seconds: int = env_field(
        3600, "RETENTION_SWEEP_INTERVAL_SECONDS", ge=60
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
        try:
            return cls(**merged)
        except ValidationError as exc:
            logger.error("settings_invalid", error_count=exc.error_count())
            raise ConfigurationError(f"invalid configuration: {exc}") from exc

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value.encode()) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} bytes"
            )
        return value

    @field_validator("jwt_issuer", "jwt_audience", "two_factor_issuer")
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("value must not be empty")
        return value.strip()

    @field_validator("security_stamp_claim")
    @classmethod
    def _validate_stamp_claim(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("SECURITY_STAMP_CLAIM must not be empty")
        if value in RESERVED_CLAIMS:
            raise ValueError(f"SECURITY_STAMP_CLAIM collides with reserved claim {value!r}")
        return value

    @field_validator("external_allowed_redirect_uris", mode="before")
    @classmethod
    def _split_redirect_uris(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("external_allowed_redirect_uris")
    @classmethod
    def _validate_redirect_uris(cls, value: list[str]) -> list[str]:
        return [_validate_redirect_uri(uri) for uri in value]

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = (value or "").lower()
        if normalized not in {"lax", "strict"}:
            raise ValueError("COOKIE_SAMESITE must be 'lax' or 'strict'")
        return normalized

    @model_validator(mode="after")
    def _validate_cross_field(self) -> "Settings":
        if self.refresh_session_lifetime_minutes > self.refresh_persistent_lifetime_days * 24 * 60:
            raise ValueError(
                "REFRESH_SESSION_LIFETIME_MINUTES must not exceed the persistent lifetime"
            )
        for provider in ("google", "github"):
            if not getattr(self, f"oauth_{provider}_enabled"):
                continue
            if not getattr(self, f"oauth_{provider}_client_id"):
                raise ValueError(f"OAUTH_{provider.upper()}_CLIENT_ID is required when enabled")
            if not getattr(self, f"oauth_{provider}_client_secret"):
                raise ValueError(
                    f"OAUTH_{provider.upper()}_CLIENT_SECRET is required when enabled"
                )
        if self.enabled_providers() and not self.external_allowed_redirect_uris:
            raise ValueError(
                "EXTERNAL_ALLOWED_REDIRECT_URIS needs at least one entry when a provider is enabled"
            )
        if not self.use_memory_store and not self.database_url and not self.test_mode:
            raise ValueError("DATABASE_URL is required unless USE_MEMORY_STORE is set")
        return self

    def enabled_providers(self) -> list[str]:
        return [
            name
            for name in ("google", "github")
            if getattr(self, f"oauth_{name}_enabled")
        ]

    def provider_credentials(self, provider: str) -> tuple[str, str]:
        client_id = getattr(self, f"oauth_{provider}_client_id", None)
        client_secret = getattr(self, f"oauth_{provider}_client_secret", None)
        if not client_id or not client_secret:
            raise ConfigurationError(f"provider {provider} is not configured")
        return client_id, client_secret


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
