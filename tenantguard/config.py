from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Engine settings, read from the environment and an optional ``.env`` file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    secret_dir: str = env_field(
        "/srv/tenantguard",
        "SECRET_DIR",
        description="Directory holding the generated signing secret when JWT_SECRET is unset",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks for the shared cache during tests",
    )
    default_tenant_id: str = env_field("000000", "DEFAULT_TENANT_ID")

    # Credentials
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tenantguard", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantguard-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )
    token_ttl_minutes: int = env_field(
        24 * 60,
        "TOKEN_TTL_MINUTES",
        description="Lifetime of issued tokens; sessions usually expire first",
    )

    # Sessions
    session_ttl_minutes: int = env_field(30, "SESSION_TTL_MINUTES")

    # Brute-force lockout
    login_max_failed_attempts: int = env_field(5, "LOGIN_MAX_FAILED_ATTEMPTS")
    login_lock_minutes: int = env_field(15, "LOGIN_LOCK_MINUTES")
    login_failure_window_minutes: int = env_field(15, "LOGIN_FAILURE_WINDOW_MINUTES")

    # Permissions
    permission_cache_ttl_seconds: int = env_field(
        30 * 60, "PERMISSION_CACHE_TTL_SECONDS"
    )
    super_admin_role_id: int = env_field(1, "SUPER_ADMIN_ROLE_ID")
    wildcard_permission: str = env_field("*:*:*", "WILDCARD_PERMISSION")

    # Revocation
    deny_list_ttl_minutes: int = env_field(
        24 * 60,
        "DENY_LIST_TTL_MINUTES",
        description="How long an explicitly revoked session id stays on the deny-list",
    )
    deny_on_logout: bool = env_field(
        True,
        "DENY_ON_LOGOUT",
        description="Also deny-list the session id when a session is logged out",
    )

    # Stores
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS")
    key_prefix: str = env_field("", "KEY_PREFIX")

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

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_minutes * 60

    @property
    def token_ttl_seconds(self) -> int:
        return self.token_ttl_minutes * 60

    @property
    def deny_list_ttl_seconds(self) -> int:
        return self.deny_list_ttl_minutes * 60

    @field_validator(
        "session_ttl_minutes",
        "token_ttl_minutes",
        "login_max_failed_attempts",
        "login_lock_minutes",
        "login_failure_window_minutes",
        "permission_cache_ttl_seconds",
        "deny_list_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store timeout must be positive")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _require_non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("leeway cannot be negative")
        return value

    @field_validator("wildcard_permission")
    @classmethod
    def _require_wildcard(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("wildcard permission cannot be empty")
        return value.strip()

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        secret_root = Path(
            (info.data or {}).get("secret_dir") or os.getenv("SECRET_DIR", "/srv/tenantguard")
        )
        secret_path = secret_root / ".jwt_secret"

        try:
            secret_root.mkdir(parents=True, exist_ok=True)
            os.chmod(secret_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(secret_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(secret_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SECRET_DIR writable"
            ) from exc
        return generated


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
