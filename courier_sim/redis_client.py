import redis.asyncio as redis
from courier_sim.config import settings

SWEEP_LOCK_KEY = "sim:sweep:lock"

# Compare-and-delete in one round trip, so an expired lock re-taken by another worker is left alone
_RELEASE_IF_OWNER = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def acquire_sweep_lock(owner: str, ttl_seconds: int) -> bool:
    """
    Returns True if this worker now holds the sweep lock, False if another worker does.
    SET NX EX: the TTL frees the lock if a worker dies mid-sweep.
    """
    r = await get_redis()
    was_set = await r.set(SWEEP_LOCK_KEY, owner, nx=True, ex=ttl_seconds)
    return bool(was_set)


async def release_sweep_lock(owner: str) -> bool:
    """Delete the lock only if we still own it. Returns True if it was deleted."""
    r = await get_redis()
    deleted = await r.eval(_RELEASE_IF_OWNER, 1, SWEEP_LOCK_KEY, owner)
    return bool(deleted)
