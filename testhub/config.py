from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from testhub.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class AppEnv(str, Enum):
    """Deployment environments recognised by the cookie and CORS policies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(name: str, root_dir: str | None) -> str:
    """Return a persisted signing secret, generating one on first use.

    Secrets live under ``SECRETS_ROOT`` so issued tokens stay valid across
    restarts. Each key gets its own file, which keeps the access and refresh
    secrets independently rotatable.
    """

    root = Path(root_dir or "/srv/testhub")
    secret_path = root / f".{name}"

    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SECRETS_ROOT writable"
        ) from exc
    logger.info("secret_generated", name=name, path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    app_env: AppEnv = env_field(AppEnv.PRODUCTION, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/testhub", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for automated suites; disables rate limiting.",
    )
    secrets_root: str = env_field("/srv/testhub", "SECRETS_ROOT")

    jwt_access_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("testhub", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    # Argon2id cost parameters; fixed per deployment so hashing time stays bounded
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(65536, "PASSWORD_HASH_MEMORY_KIB", ge=8)

    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_max_attempts: int = env_field(5, "RATE_LIMIT_MAX_ATTEMPTS", gt=0)
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS", gt=0)
    rate_limit_lockout_seconds: int = env_field(300, "RATE_LIMIT_LOCKOUT_SECONDS", gt=0)
    trust_proxy_headers: bool = env_field(
        True,
        "TRUST_PROXY_HEADERS",
        description="Read client IPs from X-Forwarded-For / X-Real-IP",
    )

    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure cookie flag; defaults to on outside development",
    )
    access_cookie_name: str = env_field("accessToken", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS", gt=0)

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_app_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_access_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        return _load_or_create_secret("jwt_access_secret", info.data.get("secrets_root"))

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        return _load_or_create_secret("jwt_refresh_secret", info.data.get("secrets_root"))

    @model_validator(mode="after")
    def _require_distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different keys")
        return self

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.app_env != AppEnv.DEVELOPMENT

    @property
    def rate_limit_active(self) -> bool:
        return self.rate_limit_enabled and not self.test_mode


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
