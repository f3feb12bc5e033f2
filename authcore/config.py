from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential-verification service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Seconds before a Redis call is abandoned and reported as store unavailable",
    )
    redis_key_prefix: str = env_field("users", "REDIS_KEY_PREFIX")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks",
    )
    state_dir: str = env_field("/srv/authcore", "STATE_DIR")

    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    default_audience: str = env_field("*.localhost", "DEFAULT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        60 * 24 * 30,
        "TOKEN_TTL_MINUTES",
        description="Lifetime of issued session tokens; pool entries expire with them",
    )

    mfa_issuer: str = env_field("authcore", "MFA_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting MFA secrets at rest (defaults to JWT_SECRET)",
    )
    mfa_pending_ttl_seconds: int = env_field(
        600,
        "MFA_PENDING_TTL_SECONDS",
        description="How long a generated but unattached MFA secret stays usable",
    )
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_window_steps: int = env_field(
        1,
        "TOTP_WINDOW_STEPS",
        description="Adjacent time steps accepted on either side of the current one",
    )
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")

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

    @field_validator("token_ttl_minutes", "mfa_pending_ttl_seconds", "totp_interval_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("totp_digits")
    @classmethod
    def _validate_digits(cls, value: int) -> int:
        if value not in {6, 7, 8}:
            raise ValueError("totp_digits must be 6, 7 or 8")
        return value

    @field_validator("totp_window_steps")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value < 0 or value > 2:
            raise ValueError("totp_window_steps must be between 0 and 2")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(Path(self.state_dir))
        return self


def _load_or_create_secret(state_dir: Path) -> str:
    """Persist a generated JWT secret so tokens stay valid across restarts."""

    secret_path = state_dir / ".jwt_secret"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET env var or make STATE_DIR writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
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
