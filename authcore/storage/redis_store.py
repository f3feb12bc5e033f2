from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.service.errors import StoreUnavailable
from authcore.storage.common import (
    SecretCipher,
    Transition,
    account_key,
    mfa_key,
    pending_key,
    recovery_key,
    token_pool_key,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, MFAState, TokenRecord

logger = get_logger(__name__)


class RedisStore:
    """Credential store backed by Redis.

    Every state transition that reads and then writes is a Lua script, so
    concurrent callers serialize on the Redis server and never on a local lock.
    """

    _CREATE_ACCOUNT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], 'password_hash', ARGV[1], 'password_algo', ARGV[2], 'created_at', ARGV[3])
return 1
"""

    # Prune expired ids, register the new one, keep the key alive until the
    # last registered token expires.
    _ADD_TOKEN_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[3])
local last = redis.call('ZRANGE', KEYS[1], -1, -1, 'WITHSCORES')
redis.call('EXPIREAT', KEYS[1], math.floor(tonumber(last[2])))
return 1
"""

    _SET_PENDING_SCRIPT = """
if redis.call('HGET', KEYS[1], 'enabled') == '1' then
  return 'conflict'
end
redis.call('DEL', KEYS[2])
redis.call('HSET', KEYS[2], 'secret', ARGV[1], 'fingerprint', ARGV[2])
redis.call('EXPIRE', KEYS[2], ARGV[3])
return 'applied'
"""

    _ENABLE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'enabled') == '1' then
  return 'conflict'
end
if redis.call('HGET', KEYS[2], 'fingerprint') ~= ARGV[1] then
  return 'precondition'
end
redis.call('DEL', KEYS[1], KEYS[2], KEYS[3])
redis.call('HSET', KEYS[1], 'secret', ARGV[2], 'fingerprint', ARGV[1], 'enabled', '1')
for i = 3, #ARGV do
  redis.call('RPUSH', KEYS[3], ARGV[i])
end
return 'applied'
"""

    _REPLACE_CODES_SCRIPT = """
if redis.call('HGET', KEYS[1], 'enabled') ~= '1' then
  return 'precondition'
end
if redis.call('HGET', KEYS[1], 'fingerprint') ~= ARGV[1] then
  return 'stale'
end
redis.call('DEL', KEYS[2])
for i = 2, #ARGV do
  redis.call('RPUSH', KEYS[2], ARGV[i])
end
return 'applied'
"""

    _DISABLE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'enabled') ~= '1' then
  return 'precondition'
end
if redis.call('HGET', KEYS[1], 'fingerprint') ~= ARGV[1] then
  return 'stale'
end
redis.call('DEL', KEYS[1], KEYS[2])
return 'applied'
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        cipher: SecretCipher,
        key_prefix: str = "users",
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = key_prefix
        self.cipher = cipher
        self.socket_timeout = socket_timeout
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            # Timeouts surface as RedisError and then as StoreUnavailable
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self._create_account = self.client.register_script(self._CREATE_ACCOUNT_SCRIPT)
        self._add_token = self.client.register_script(self._ADD_TOKEN_SCRIPT)
        self._set_pending = self.client.register_script(self._SET_PENDING_SCRIPT)
        self._enable = self.client.register_script(self._ENABLE_SCRIPT)
        self._replace_codes = self.client.register_script(self._REPLACE_CODES_SCRIPT)
        self._disable = self.client.register_script(self._DISABLE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""

        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str, username: Optional[str] = None) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error(
                "credential_store_error",
                operation=operation,
                username=username,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(operation, username) from exc

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------

    async def create_account(
        self, username: str, password_hash: str, password_algo: str
    ) -> Account:
        created_at = datetime.now(timezone.utc)
        async with self._guard("create_account", username):
            created = await self._create_account(
                keys=[account_key(self.prefix, username)],
                args=[password_hash, password_algo, created_at.isoformat()],
            )
        if not int(created):
            raise ConstraintViolation("account already exists", {"username": username})
        return Account(
            username=username,
            password_hash=password_hash,
            password_algo=password_algo,
            created_at=created_at,
        )

    async def get_account(self, username: str) -> Optional[Account]:
        async with self._guard("get_account", username):
            raw = await self.client.hgetall(account_key(self.prefix, username))
        if not raw:
            return None
        created_raw = raw.get("created_at")
        created_at = datetime.now(timezone.utc)
        if created_raw:
            try:
                created_at = datetime.fromisoformat(created_raw)
            except ValueError:
                logger.warning("account_created_at_invalid", username=username)
        return Account(
            username=username,
            password_hash=raw.get("password_hash", ""),
            password_algo=raw.get("password_algo", ""),
            created_at=created_at,
        )

    # ------------------------------------------------------------------
    # token pools
    # ------------------------------------------------------------------

    async def add_token(self, record: TokenRecord, *, now: int) -> None:
        key = token_pool_key(self.prefix, record.username, record.audience)
        async with self._guard("add_token", record.username):
            await self._add_token(
                keys=[key], args=[now, record.expires_at, record.token_id]
            )

    async def has_token(
        self, username: str, audience: str, token_id: str, *, now: int
    ) -> bool:
        key = token_pool_key(self.prefix, username, audience)
        async with self._guard("has_token", username):
            score = await self.client.zscore(key, token_id)
        return score is not None and float(score) > now

    async def remove_token(self, username: str, audience: str, token_id: str) -> bool:
        key = token_pool_key(self.prefix, username, audience)
        async with self._guard("remove_token", username):
            removed = await self.client.zrem(key, token_id)
        return bool(removed)

    # ------------------------------------------------------------------
    # second factor
    # ------------------------------------------------------------------

    async def get_mfa_state(self, username: str) -> MFAState:
        async with self._guard("get_mfa_state", username):
            pipe = self.client.pipeline(transaction=True)
            pipe.hgetall(mfa_key(self.prefix, username))
            pipe.hgetall(pending_key(self.prefix, username))
            pipe.lrange(recovery_key(self.prefix, username), 0, -1)
            active, pending, codes = await pipe.execute()
        if active and active.get("enabled") == "1":
            secret = self.cipher.decrypt(active.get("secret", ""))
            return MFAState.enabled(secret, tuple(codes or ()))
        if pending and pending.get("secret"):
            secret = self.cipher.decrypt(pending["secret"])
            if secret:
                return MFAState.pending(secret)
        return MFAState.disabled()

    async def set_pending_secret(
        self, username: str, secret: str, ttl_seconds: int
    ) -> Transition:
        async with self._guard("set_pending_secret", username):
            result = await self._set_pending(
                keys=[mfa_key(self.prefix, username), pending_key(self.prefix, username)],
                args=[self.cipher.encrypt(secret), self.cipher.fingerprint(secret), ttl_seconds],
            )
        return Transition(result)

    async def enable_mfa(
        self, username: str, secret: str, recovery_codes: Sequence[str]
    ) -> Transition:
        async with self._guard("enable_mfa", username):
            result = await self._enable(
                keys=[
                    mfa_key(self.prefix, username),
                    pending_key(self.prefix, username),
                    recovery_key(self.prefix, username),
                ],
                args=[
                    self.cipher.fingerprint(secret),
                    self.cipher.encrypt(secret),
                    *recovery_codes,
                ],
            )
        return Transition(result)

    async def replace_recovery_codes(
        self, username: str, secret: str, recovery_codes: Sequence[str]
    ) -> Transition:
        async with self._guard("replace_recovery_codes", username):
            result = await self._replace_codes(
                keys=[mfa_key(self.prefix, username), recovery_key(self.prefix, username)],
                args=[self.cipher.fingerprint(secret), *recovery_codes],
            )
        return Transition(result)

    async def disable_mfa(self, username: str, secret: str) -> Transition:
        async with self._guard("disable_mfa", username):
            result = await self._disable(
                keys=[mfa_key(self.prefix, username), recovery_key(self.prefix, username)],
                args=[self.cipher.fingerprint(secret)],
            )
        return Transition(result)

    async def consume_recovery_code(self, username: str, code: str) -> bool:
        # LREM is a single compare-and-remove: of two racing callers exactly
        # one sees a removal count of 1.
        async with self._guard("consume_recovery_code", username):
            removed = await self.client.lrem(recovery_key(self.prefix, username), 1, code)
        return int(removed) == 1

    async def ping(self) -> None:
        async with self._guard("ping"):
            await self.client.ping()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
