from __future__ import annotations

import secrets
from typing import Optional, Protocol

from redis.asyncio import Redis, ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

import structlog
from catalog_sync.config import Settings, settings
from catalog_sync.exceptions import CacheError

log = structlog.get_logger(__name__)

_pool: Optional[ConnectionPool] = None

LEASE_KEY = "catalog-sync:run-lease"


# ── Pool lifecycle ────────────────────────────────────────────────────────────

async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", pool_size=settings.REDIS_POOL_SIZE)


async def close_redis_pool() -> None:
    global _pool
    if _pool:
        await _pool.aclose()
        _pool = None
        log.info("redis.pool.closed")


def redis_enabled() -> bool:
    return _pool is not None


def get_redis() -> Redis:
    if _pool is None:
        raise CacheError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


async def ping_redis() -> bool:
    try:
        r = get_redis()
        return await r.ping()
    except Exception:
        return False


# ── Run leases ────────────────────────────────────────────────────────────────
#
# The coordinator's asyncio.Lock only guards one process. When several
# instances share a database, a Redis lease makes the single-flight
# guarantee deployment-wide. The TTL bounds how long a crashed holder can
# block the others.

class RunLease(Protocol):
    async def acquire(self) -> bool: ...
    async def release(self) -> None: ...


class NullLease:
    """Single-instance deployments: the in-process lock is enough."""

    async def acquire(self) -> bool:
        return True

    async def release(self) -> None:
        return None


# Delete only if we still own the lease; it may have expired and been retaken.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisLease:
    def __init__(self, redis: Redis, ttl_seconds: float, key: str = LEASE_KEY):
        self._redis = redis
        self._ttl_ms = int(ttl_seconds * 1000)
        self._key = key
        self._token: Optional[str] = None

    async def acquire(self) -> bool:
        token = secrets.token_hex(16)
        try:
            acquired = await self._redis.set(self._key, token, nx=True, px=self._ttl_ms)
        except RedisError as e:
            # Without Redis we cannot prove nobody else is running; skip this tick.
            log.warning("lease.acquire.error", key=self._key, error=str(e))
            return False
        if acquired:
            self._token = token
            return True
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        try:
            await self._redis.eval(_RELEASE_SCRIPT, 1, self._key, self._token)
        except RedisError as e:
            log.warning("lease.release.error", key=self._key, error=str(e))
        finally:
            self._token = None


def build_lease(cfg: Settings = settings) -> RunLease:
    if cfg.SYNC_LEASE_BACKEND == "redis":
        return RedisLease(get_redis(), ttl_seconds=cfg.SYNC_RUN_TIMEOUT_SECONDS + 60)
    return NullLease()
