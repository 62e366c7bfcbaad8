"""
Optional Redis connection manager.

Provides an async Redis client singleton that degrades gracefully when
REDIS_URL is not set or Redis is unreachable. The worker uses it for a run
lease so only one process drains the delivery queue at a time; the per-row
claim in the queue stays the real guarantee.
"""

import logging
from typing import Optional
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from cvpipeline.config import get_settings

_log = logging.getLogger("cv_pipeline.redis")

_redis_client: Optional[aioredis.Redis] = None

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


async def init_redis(url: Optional[str] = None) -> None:
    """Connect to Redis if REDIS_URL is configured. Safe to call always."""
    global _redis_client

    url = url if url is not None else get_settings().redis_url
    if not url:
        _log.info("[redis] REDIS_URL not set, run lease disabled")
        return

    try:
        _redis_client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        # Verify connectivity
        await _redis_client.ping()
        _log.info("[redis] Connected successfully")
    except (RedisError, OSError) as exc:
        _log.warning(f"[redis] Connection failed ({exc}), running without Redis")
        _redis_client = None


async def close_redis() -> None:
    """Gracefully close the Redis connection pool."""
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            _log.info("[redis] Connection closed")
        except RedisError as exc:
            _log.warning(f"[redis] Error while closing connection: {exc}")
        _redis_client = None


def get_redis() -> Optional[aioredis.Redis]:
    """Return the Redis client or None if unavailable."""
    return _redis_client


async def is_redis_healthy() -> bool:
    """Quick health probe, returns False rather than raising."""
    if _redis_client is None:
        return False
    try:
        return await _redis_client.ping()
    except RedisError:
        return False


async def acquire_run_lease(name: str, ttl_seconds: int) -> Optional[str]:
    """
    Try to take the named lease for `ttl_seconds`.

    Returns a token to pass to `release_run_lease`, "" when Redis is not in use
    (caller runs unguarded), or None when another process holds the lease.
    """
    if _redis_client is None:
        return ""

    token = uuid4().hex
    try:
        acquired = await _redis_client.set(f"lease:{name}", token, nx=True, ex=ttl_seconds)
    except RedisError as exc:
        _log.warning(f"[redis] Lease {name} unavailable ({exc}), running unguarded")
        return ""
    return token if acquired else None


async def release_run_lease(name: str, token: Optional[str]) -> None:
    if _redis_client is None or not token:
        return
    try:
        await _redis_client.eval(_RELEASE_SCRIPT, 1, f"lease:{name}", token)
    except RedisError as exc:
        # The lease expires on its own
        _log.warning(f"[redis] Could not release lease {name}: {exc}")
