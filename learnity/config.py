from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from learnity.logging import get_logger

logger = get_logger(__name__)

# Upper bound on how long a cached role may be served after a role change
MAX_ROLE_CACHE_TTL_SECONDS = 60


class IdentityProviderMode(str, Enum):
    """Where identity tokens are minted and verified."""

    LOCAL = "local"
    REMOTE = "remote"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and ``.env``."""

    database_url: str = env_field("postgresql://localhost:5432/learnity", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for persisting the in-memory store between restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    secrets_dir: str = env_field("/srv/learnity", "SECRETS_DIR")
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    # Peers whose X-Forwarded-For is believed; anyone else is identified by the socket address
    trusted_proxies: list[str] = env_field([], "TRUSTED_PROXIES")

    # Identity provider
    identity_provider: IdentityProviderMode = env_field(
        IdentityProviderMode.LOCAL, "IDENTITY_PROVIDER"
    )
    identity_provider_url: str | None = env_field(None, "IDENTITY_PROVIDER_URL")
    identity_provider_api_key: str | None = env_field(None, "IDENTITY_PROVIDER_API_KEY")
    identity_provider_timeout_seconds: float = env_field(
        5.0,
        "IDENTITY_PROVIDER_TIMEOUT_SECONDS",
        description="Token verification calls slower than this fail as provider_unreachable",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("learnity", "JWT_ISSUER")
    jwt_audience: str = env_field("learnity-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS")
    identity_token_ttl_minutes: int = env_field(60, "IDENTITY_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    require_email_verification_on_signup: bool = env_field(
        False,
        "REQUIRE_EMAIL_VERIFICATION_ON_SIGNUP",
        description="When false, locally registered accounts start with a verified email",
    )

    # Sessions and roles
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    max_sessions_per_subject: int = env_field(5, "MAX_SESSIONS_PER_SUBJECT")
    role_cache_ttl_seconds: int = env_field(30, "ROLE_CACHE_TTL_SECONDS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")

    # Suspicious-pattern detection
    suspicious_failed_login_threshold: int = env_field(5, "SUSPICIOUS_FAILED_LOGIN_THRESHOLD")
    suspicious_failed_login_window_minutes: int = env_field(
        10, "SUSPICIOUS_FAILED_LOGIN_WINDOW_MINUTES"
    )
    suspicious_ip_failure_threshold: int = env_field(10, "SUSPICIOUS_IP_FAILURE_THRESHOLD")
    suspicious_distinct_ip_threshold: int = env_field(5, "SUSPICIOUS_DISTINCT_IP_THRESHOLD")
    suspicious_distinct_ip_window_minutes: int = env_field(
        60, "SUSPICIOUS_DISTINCT_IP_WINDOW_MINUTES"
    )
    suspicious_denial_threshold: int = env_field(10, "SUSPICIOUS_DENIAL_THRESHOLD")
    off_hours_history_days: int = env_field(30, "OFF_HOURS_HISTORY_DAYS")
    off_hours_min_history: int = env_field(5, "OFF_HOURS_MIN_HISTORY")
    alert_window_minutes: int = env_field(60, "ALERT_WINDOW_MINUTES")

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

    @field_validator("identity_provider")
    @classmethod
    def _validate_identity_provider(cls, value: IdentityProviderMode) -> IdentityProviderMode:
        return IdentityProviderMode(value)

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("role_cache_ttl_seconds")
    @classmethod
    def _bound_role_cache_ttl(cls, value: int) -> int:
        if value < 0 or value > MAX_ROLE_CACHE_TTL_SECONDS:
            raise ValueError(
                f"ROLE_CACHE_TTL_SECONDS must be between 0 and {MAX_ROLE_CACHE_TTL_SECONDS}"
            )
        return value

    @field_validator("max_sessions_per_subject", "identity_token_ttl_minutes", "session_ttl_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        secrets_root = Path(os.getenv("SECRETS_DIR", "/srv/learnity"))
        secret_path = secrets_root / ".jwt_secret"
        try:
            secrets_root.mkdir(parents=True, exist_ok=True)
            os.chmod(secrets_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(secrets_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(secrets_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SECRETS_DIR writable"
            ) from exc
        return generated


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
