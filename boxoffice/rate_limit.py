import time

from fastapi import Request
from loguru import logger
from redis.exceptions import RedisError, WatchError

from .errors import RateLimited

BUCKET_TTL_SECONDS = 3600
MAX_ATTEMPTS = 10


def _take(bucket: dict, capacity: int, refill_per_sec: float, now: float) -> tuple[bool, float]:
    tokens = float(bucket.get("tokens", capacity))
    last = float(bucket.get("last", now))

    # Refill
    tokens = min(capacity, tokens + (now - last) * refill_per_sec)
    if tokens >= 1.0:
        return True, tokens - 1.0
    return False, tokens


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float) -> bool:
    """Take one token from the bucket at ``rl:<key>``.

    The read-modify-write runs under WATCH, so concurrent callers never spend
    the same token twice. A bucket that stays contended for every attempt
    denies the request.
    """
    bucket_key = f"rl:{key}"
    async with redis.pipeline(transaction=True) as pipe:
        for _ in range(MAX_ATTEMPTS):
            try:
                await pipe.watch(bucket_key)
                now = time.time()
                allowed, tokens = _take(await pipe.hgetall(bucket_key), capacity, refill_per_sec, now)

                pipe.multi()
                pipe.hset(bucket_key, mapping={"tokens": tokens, "last": now})
                pipe.expire(bucket_key, BUCKET_TTL_SECONDS)
                await pipe.execute()
                return allowed
            except WatchError:
                continue

    logger.warning("Rate limit bucket {} stayed contended, denying", bucket_key)
    return False


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(request: Request) -> None:
    """Per-IP token bucket; an unreachable Redis lets the request through."""
    settings = request.app.state.settings
    if not settings.rate_limit_enabled:
        return

    ip = client_ip(request)
    try:
        allowed = await token_bucket(
            request.app.state.redis,
            key=ip,
            capacity=settings.rate_limit_capacity,
            refill_per_sec=settings.rate_limit_refill_per_sec,
        )
    except RedisError as exc:
        logger.warning("Rate limiter unavailable, allowing {}: {}", ip, exc)
        return

    if not allowed:
        raise RateLimited(
            "Too many requests, slow down",
            details={"retry_after_seconds": round(1.0 / settings.rate_limit_refill_per_sec, 2)},
        )
