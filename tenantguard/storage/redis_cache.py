from __future__ import annotations

import functools
import json
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tenantguard.logging import get_logger
from tenantguard.storage.errors import StoreTimeoutError, StoreUnavailableError

logger = get_logger(__name__)

SESSION_KEY = "login_tokens:"
SESSION_INDEX_KEY = "user_sessions:"
LOGIN_FAILURE_KEY = "pwd_err_cnt:"
LOGIN_LOCK_KEY = "pwd_err_cnt:lock:"
TOKEN_VERSION_KEY = "user_token_version:"
DENY_LIST_KEY = "token_blacklist:"
PERMISSION_CACHE_KEY = "sys_user:permissions:"


def _translate_redis_errors(func: Callable) -> Callable:
    """Surface redis client failures as ``StoreUnavailableError``.

    Socket timeouts become ``StoreTimeoutError`` so they are handled like an
    expired ``with_timeout`` deadline.
    """

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisTimeoutError as exc:
            logger.warning("redis_operation_timed_out", operation=func.__name__, error=str(exc))
            raise StoreTimeoutError(
                f"redis {func.__name__} timed out", backend="redis", detail={"error": str(exc)}
            ) from exc
        except RedisError as exc:
            logger.error(
                "redis_operation_failed",
                operation=func.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError(
                f"redis {func.__name__} failed", backend="redis", detail={"error": str(exc)}
            ) from exc

    return wrapper


class RedisCache:
    """Redis-backed shared state for sessions, lockouts, revocation and permission caches."""

    # Atomic failure count + lock trigger. A call while locked is a no-op so the
    # lock is never reset or extended by further failures.
    _LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end

return {0, attempts}
"""

    # Replace the session hash and register it in the principal's index; the
    # index TTL only ever grows so it outlives every indexed session.
    _PUT_SESSION_SCRIPT = """
local ttl = tonumber(ARGV[1])
redis.call('DEL', KEYS[1])
for i = 3, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
redis.call('EXPIRE', KEYS[1], ttl)
redis.call('SADD', KEYS[2], ARGV[2])
if redis.call('TTL', KEYS[2]) < ttl then
  redis.call('EXPIRE', KEYS[2], ttl)
end
return 1
"""

    # Per-field merge that refuses to resurrect an expired or deleted session.
    # Without an explicit ttl the key keeps its remaining lifetime.
    _MERGE_SESSION_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
for i = 3, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[1] ~= '' then
  local ttl = tonumber(ARGV[1])
  redis.call('EXPIRE', KEYS[1], ttl)
  local pid = redis.call('HGET', KEYS[1], 'principal_id')
  if pid then
    local index = ARGV[2] .. pid
    if redis.call('TTL', index) < ttl then
      redis.call('EXPIRE', index, ttl)
    end
  end
end
return 1
"""

    _DELETE_SESSION_SCRIPT = """
local pid = redis.call('HGET', KEYS[1], 'principal_id')
local removed = redis.call('DEL', KEYS[1])
if pid then
  redis.call('SREM', ARGV[1] .. pid, ARGV[2])
end
return removed
"""

    def __init__(self, redis_url: str, *, key_prefix: str = "", socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)
        self._put_session = self.client.register_script(self._PUT_SESSION_SCRIPT)
        self._merge_session = self.client.register_script(self._MERGE_SESSION_SCRIPT)
        self._delete_session = self.client.register_script(self._DELETE_SESSION_SCRIPT)

    def _key(self, namespace: str, suffix: Any) -> str:
        return f"{self.key_prefix}{namespace}{suffix}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before wiring the engine."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    # =========================================================================
    # Sessions
    # =========================================================================

    @staticmethod
    def _flatten(fields: Dict[str, str]) -> List[str]:
        flat: List[str] = []
        for name, value in fields.items():
            flat.extend((name, value))
        return flat

    @_translate_redis_errors
    async def put_session(
        self, session_id: str, fields: Dict[str, str], ttl_seconds: int, *, principal_id: int
    ) -> None:
        await self._put_session(
            keys=[
                self._key(SESSION_KEY, session_id),
                self._key(SESSION_INDEX_KEY, principal_id),
            ],
            args=[max(1, int(ttl_seconds)), session_id, *self._flatten(fields)],
        )

    @_translate_redis_errors
    async def get_session(self, session_id: str) -> Optional[Dict[str, str]]:
        fields = await self.client.hgetall(self._key(SESSION_KEY, session_id))
        return fields or None

    @_translate_redis_errors
    async def merge_session(
        self, session_id: str, fields: Dict[str, str], *, ttl_seconds: Optional[int] = None
    ) -> bool:
        result = await self._merge_session(
            keys=[self._key(SESSION_KEY, session_id)],
            args=[
                "" if ttl_seconds is None else max(1, int(ttl_seconds)),
                self._key(SESSION_INDEX_KEY, ""),
                *self._flatten(fields),
            ],
        )
        return bool(int(result))

    @_translate_redis_errors
    async def delete_session(self, session_id: str, *, principal_id: Optional[int] = None) -> bool:
        removed = await self._delete_session(
            keys=[self._key(SESSION_KEY, session_id)],
            args=[self._key(SESSION_INDEX_KEY, ""), session_id],
        )
        if principal_id is not None:
            # Index entry for a session whose hash already expired
            await self.client.srem(self._key(SESSION_INDEX_KEY, principal_id), session_id)
        return bool(int(removed))

    @_translate_redis_errors
    async def session_ttl(self, session_id: str) -> int:
        ttl = await self.client.ttl(self._key(SESSION_KEY, session_id))
        return max(0, int(ttl))

    @_translate_redis_errors
    async def principal_session_ids(self, principal_id: int) -> List[str]:
        index_key = self._key(SESSION_INDEX_KEY, principal_id)
        members = sorted(await self.client.smembers(index_key))
        if not members:
            return []
        async with self.client.pipeline() as pipe:
            for session_id in members:
                pipe.exists(self._key(SESSION_KEY, session_id))
            exists = await pipe.execute()
        live = [sid for sid, present in zip(members, exists) if present]
        stale = [sid for sid, present in zip(members, exists) if not present]
        if stale:
            await self.client.srem(index_key, *stale)
        return live

    # =========================================================================
    # Login failures
    # =========================================================================

    @_translate_redis_errors
    async def record_login_failure(
        self, identity: str, *, max_attempts: int, window_seconds: int, lock_seconds: int
    ) -> Tuple[bool, int]:
        """Atomically record a failed attempt and trigger the lock at the threshold.

        Returns:
            Tuple of (locked: bool, attempts: int); attempts is -1 when the
            identity was already locked and nothing was recorded.
        """
        result = await self._login_failure(
            keys=[self._key(LOGIN_LOCK_KEY, identity), self._key(LOGIN_FAILURE_KEY, identity)],
            args=[max_attempts, window_seconds, lock_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    @_translate_redis_errors
    async def login_lock_ttl(self, identity: str) -> int:
        ttl = await self.client.ttl(self._key(LOGIN_LOCK_KEY, identity))
        return max(0, int(ttl))

    @_translate_redis_errors
    async def login_failure_count(self, identity: str) -> int:
        count = await self.client.get(self._key(LOGIN_FAILURE_KEY, identity))
        return int(count) if count else 0

    @_translate_redis_errors
    async def clear_login_failures(self, identity: str) -> None:
        await self.client.delete(self._key(LOGIN_FAILURE_KEY, identity))

    @_translate_redis_errors
    async def unlock_login(self, identity: str) -> None:
        await self.client.delete(
            self._key(LOGIN_LOCK_KEY, identity), self._key(LOGIN_FAILURE_KEY, identity)
        )

    # =========================================================================
    # Revocation
    # =========================================================================

    @_translate_redis_errors
    async def get_token_version(self, principal_id: int) -> int:
        version = await self.client.get(self._key(TOKEN_VERSION_KEY, principal_id))
        return int(version) if version else 0

    @_translate_redis_errors
    async def incr_token_version(self, principal_id: int) -> int:
        return int(await self.client.incr(self._key(TOKEN_VERSION_KEY, principal_id)))

    @_translate_redis_errors
    async def clear_token_version(self, principal_id: int) -> None:
        await self.client.delete(self._key(TOKEN_VERSION_KEY, principal_id))

    @_translate_redis_errors
    async def deny_session(self, session_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self._key(DENY_LIST_KEY, session_id), "1", ex=ttl_seconds)

    @_translate_redis_errors
    async def is_session_denied(self, session_id: str) -> bool:
        return bool(await self.client.exists(self._key(DENY_LIST_KEY, session_id)))

    @_translate_redis_errors
    async def undeny_session(self, session_id: str) -> None:
        await self.client.delete(self._key(DENY_LIST_KEY, session_id))

    # =========================================================================
    # Permission cache
    # =========================================================================

    @_translate_redis_errors
    async def get_permissions(self, principal_id: int) -> Optional[List[str]]:
        cached = await self.client.get(self._key(PERMISSION_CACHE_KEY, principal_id))
        if not cached:
            return None
        try:
            value = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return list(value) if isinstance(value, list) else None

    @_translate_redis_errors
    async def set_permissions(
        self, principal_id: int, permissions: Iterable[str], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._key(PERMISSION_CACHE_KEY, principal_id),
            json.dumps(sorted(permissions)),
            ex=max(1, int(ttl_seconds)),
        )

    @_translate_redis_errors
    async def evict_permissions(self, principal_id: int) -> None:
        await self.client.delete(self._key(PERMISSION_CACHE_KEY, principal_id))


class MemoryCache:
    """In-process stand-in for ``RedisCache`` used under TEST_MODE or local dev.

    Entries expire lazily on access against ``clock`` (seconds, monotonic by
    default); ``sweep`` drops everything already expired. Each operation runs
    under one lock, which gives the same per-call atomicity as the Lua scripts.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None, key_prefix: str = ""):
        self.clock = clock or time.monotonic
        self.key_prefix = key_prefix
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _key(self, namespace: str, suffix: Any) -> str:
        return f"{self.key_prefix}{namespace}{suffix}"

    # -- primitive helpers; callers hold self._lock --------------------------

    def _get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._entries[key]
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: Optional[float]) -> None:
        expires_at = self.clock() + ttl_seconds if ttl_seconds is not None else None
        self._entries[key] = (value, expires_at)

    def _ttl(self, key: str) -> int:
        if self._get(key) is None:
            return 0
        expires_at = self._entries[key][1]
        if expires_at is None:
            return 0
        return max(0, int(round(expires_at - self.clock())))

    def _expire(self, key: str, ttl_seconds: float) -> None:
        if self._get(key) is not None:
            self._entries[key] = (self._entries[key][0], self.clock() + ttl_seconds)

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._get(key) is not None:
                removed += 1
            self._entries.pop(key, None)
        return removed

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""

        with self._lock:
            now = self.clock()
            expired = [
                key
                for key, (_, expires_at) in self._entries.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    # -- sessions -----------------------------------------------------------

    async def put_session(
        self, session_id: str, fields: Dict[str, str], ttl_seconds: int, *, principal_id: int
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        with self._lock:
            self._set(self._key(SESSION_KEY, session_id), dict(fields), ttl)
            index_key = self._key(SESSION_INDEX_KEY, principal_id)
            members = self._get(index_key) or set()
            members.add(session_id)
            remaining = self._ttl(index_key)
            self._set(index_key, members, max(ttl, remaining))

    async def get_session(self, session_id: str) -> Optional[Dict[str, str]]:
        with self._lock:
            fields = self._get(self._key(SESSION_KEY, session_id))
            return dict(fields) if fields else None

    async def merge_session(
        self, session_id: str, fields: Dict[str, str], *, ttl_seconds: Optional[int] = None
    ) -> bool:
        key = self._key(SESSION_KEY, session_id)
        with self._lock:
            current = self._get(key)
            if current is None:
                return False
            current.update(fields)
            if ttl_seconds is not None:
                ttl = max(1, int(ttl_seconds))
                self._expire(key, ttl)
                pid = current.get("principal_id")
                if pid is not None:
                    index_key = self._key(SESSION_INDEX_KEY, pid)
                    if self._ttl(index_key) < ttl:
                        self._expire(index_key, ttl)
            return True

    async def delete_session(self, session_id: str, *, principal_id: Optional[int] = None) -> bool:
        key = self._key(SESSION_KEY, session_id)
        with self._lock:
            current = self._get(key)
            owners = {str(principal_id)} if principal_id is not None else set()
            if current and current.get("principal_id") is not None:
                owners.add(current["principal_id"])
            for owner in owners:
                members = self._get(self._key(SESSION_INDEX_KEY, owner))
                if members:
                    members.discard(session_id)
            return bool(self._delete(key))

    async def session_ttl(self, session_id: str) -> int:
        with self._lock:
            return self._ttl(self._key(SESSION_KEY, session_id))

    async def principal_session_ids(self, principal_id: int) -> List[str]:
        with self._lock:
            members = self._get(self._key(SESSION_INDEX_KEY, principal_id)) or set()
            live = sorted(
                sid for sid in members if self._get(self._key(SESSION_KEY, sid)) is not None
            )
            members.intersection_update(live)
            return live

    # -- login failures -----------------------------------------------------

    async def record_login_failure(
        self, identity: str, *, max_attempts: int, window_seconds: int, lock_seconds: int
    ) -> Tuple[bool, int]:
        lock_key = self._key(LOGIN_LOCK_KEY, identity)
        counter_key = self._key(LOGIN_FAILURE_KEY, identity)
        with self._lock:
            if self._get(lock_key) is not None:
                return (True, -1)
            attempts = int(self._get(counter_key) or 0) + 1
            self._set(counter_key, attempts, window_seconds)
            if attempts >= max_attempts:
                self._set(lock_key, "1", lock_seconds)
                self._delete(counter_key)
                return (True, attempts)
            return (False, attempts)

    async def login_lock_ttl(self, identity: str) -> int:
        with self._lock:
            return self._ttl(self._key(LOGIN_LOCK_KEY, identity))

    async def login_failure_count(self, identity: str) -> int:
        with self._lock:
            return int(self._get(self._key(LOGIN_FAILURE_KEY, identity)) or 0)

    async def clear_login_failures(self, identity: str) -> None:
        with self._lock:
            self._delete(self._key(LOGIN_FAILURE_KEY, identity))

    async def unlock_login(self, identity: str) -> None:
        with self._lock:
            self._delete(self._key(LOGIN_LOCK_KEY, identity), self._key(LOGIN_FAILURE_KEY, identity))

    # -- revocation ---------------------------------------------------------

    async def get_token_version(self, principal_id: int) -> int:
        with self._lock:
            return int(self._get(self._key(TOKEN_VERSION_KEY, principal_id)) or 0)

    async def incr_token_version(self, principal_id: int) -> int:
        key = self._key(TOKEN_VERSION_KEY, principal_id)
        with self._lock:
            version = int(self._get(key) or 0) + 1
            self._set(key, version, None)
            return version

    async def clear_token_version(self, principal_id: int) -> None:
        with self._lock:
            self._delete(self._key(TOKEN_VERSION_KEY, principal_id))

    async def deny_session(self, session_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._set(self._key(DENY_LIST_KEY, session_id), "1", ttl_seconds)

    async def is_session_denied(self, session_id: str) -> bool:
        with self._lock:
            return self._get(self._key(DENY_LIST_KEY, session_id)) is not None

    async def undeny_session(self, session_id: str) -> None:
        with self._lock:
            self._delete(self._key(DENY_LIST_KEY, session_id))

    # -- permission cache ---------------------------------------------------

    async def get_permissions(self, principal_id: int) -> Optional[List[str]]:
        with self._lock:
            cached = self._get(self._key(PERMISSION_CACHE_KEY, principal_id))
            return list(cached) if cached is not None else None

    async def set_permissions(
        self, principal_id: int, permissions: Iterable[str], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(
                self._key(PERMISSION_CACHE_KEY, principal_id),
                sorted(permissions),
                max(1, int(ttl_seconds)),
            )

    async def evict_permissions(self, principal_id: int) -> None:
        with self._lock:
            self._delete(self._key(PERMISSION_CACHE_KEY, principal_id))
