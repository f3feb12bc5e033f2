from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.mfa import MFAManager
from authcore.service.tokens import TokenPool
from authcore.storage.common import CredentialStore, SecretCipher
from authcore.storage.memory import MemoryStore
from authcore.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        cipher = SecretCipher(self.settings.mfa_secret_key or self.settings.jwt_secret)
        self.store: CredentialStore = self._build_store(cipher)

        self.tokens = TokenPool(
            self.store,
            secret=self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            ttl_seconds=self.settings.token_ttl_minutes * 60,
        )
        self.mfa = MFAManager(
            self.store,
            issuer=self.settings.mfa_issuer,
            interval=self.settings.totp_interval_seconds,
            digits=self.settings.totp_digits,
            window=self.settings.totp_window_steps,
            recovery_code_count=self.settings.recovery_code_count,
            pending_ttl_seconds=self.settings.mfa_pending_ttl_seconds,
        )
        self.auth = AuthService(self.store, self.tokens, self.mfa)

    def _build_store(self, cipher: SecretCipher) -> CredentialStore:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore(cipher=cipher)

        redis_error: Exception | None = None
        try:
            store = RedisStore(
                self.settings.redis_url,
                cipher=cipher,
                key_prefix=self.settings.redis_key_prefix,
                socket_timeout=self.settings.redis_socket_timeout,
            )
            store.verify_connection()
            logger.info("runtime_store_initialized", store_type="redis")
            return store
        except (RedisError, OSError) as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token pools and MFA state; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for an in-memory fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemoryStore(cipher=cipher)

    async def close(self) -> None:
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.store.close())
            except RuntimeError:
                asyncio.run(runtime.store.close())
        reset_settings_cache()
        runtime = Runtime()
        return runtime
