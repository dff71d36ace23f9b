import pytest
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

from catalog_sync.config import settings
from catalog_sync.lease import LEASE_KEY, NullLease, RedisLease, build_lease


@pytest.mark.asyncio
async def test_acquire_sets_key_with_nx_and_ttl():
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=True)
    lease = RedisLease(redis, ttl_seconds=30)

    assert await lease.acquire()
    args, kwargs = redis.set.call_args
    assert args[0] == LEASE_KEY
    assert kwargs == {"nx": True, "px": 30000}


@pytest.mark.asyncio
async def test_acquire_fails_when_held():
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=None)
    lease = RedisLease(redis, ttl_seconds=30)

    assert not await lease.acquire()
    await lease.release()
    redis.eval.assert_not_called()


@pytest.mark.asyncio
async def test_release_only_deletes_own_token():
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=True)
    lease = RedisLease(redis, ttl_seconds=30)
    await lease.acquire()
    token = redis.set.call_args.args[1]

    await lease.release()

    args = redis.eval.call_args.args
    assert args[1:] == (1, LEASE_KEY, token)


@pytest.mark.asyncio
async def test_redis_outage_denies_lease():
    redis = AsyncMock()
    redis.set = AsyncMock(side_effect=RedisConnectionError("down"))
    assert not await RedisLease(redis, ttl_seconds=30).acquire()


@pytest.mark.asyncio
async def test_null_lease_always_granted():
    lease = NullLease()
    assert await lease.acquire()
    await lease.release()


def test_build_lease_defaults_to_null():
    assert isinstance(build_lease(settings), NullLease)
