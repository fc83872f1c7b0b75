"""
CeloCred — Rate Limiting
Redis-backed sliding window rate limiter for the submit endpoint.
Fails open: if Redis is down, requests go through.

Runs on the asyncio Redis client so a slow or dead Redis never blocks the
event loop. After a failure Redis is left alone for RATE_LIMIT_REDIS_RETRY
seconds instead of being reconnected on every request.
"""
import hashlib
import time
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import HTTPException, Request

from celocred.config import settings

logger = structlog.get_logger()

_redis: Optional[aioredis.Redis] = None
_down_until: float = 0.0


def _mark_down(error: Exception):
    global _redis, _down_until
    _redis = None
    _down_until = time.monotonic() + settings.RATE_LIMIT_REDIS_RETRY
    logger.warning("rate_limiter_redis_unavailable",
        error=str(error), retry_in=settings.RATE_LIMIT_REDIS_RETRY)


async def _get_redis() -> Optional[aioredis.Redis]:
    """Lazy Redis connection. None while Redis is marked down."""
    global _redis
    if _redis is not None:
        return _redis
    if time.monotonic() < _down_until:
        return None
    try:
        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True, socket_timeout=1.0)
        await client.ping()
        logger.info("rate_limiter_redis_connected")
        _redis = client
        return _redis
    except Exception as e:
        _mark_down(e)
        return None


def client_ip(request: Request) -> str:
    """Respects X-Forwarded-For from the reverse proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def rate_key(ip: str, endpoint: str) -> str:
    ip_hash = hashlib.sha256(ip.encode()).hexdigest()[:16]
    return f"celocred:rl:{endpoint}:{ip_hash}"


async def check_rate_limit(
    request: Request,
    endpoint: str,
    max_requests: int,
    window_seconds: int,
    client: Optional[aioredis.Redis] = None,
) -> None:
    """Raises 429 once `max_requests` land inside the trailing window."""
    r = client if client is not None else await _get_redis()
    if r is None:
        return

    ip = client_ip(request)
    key = rate_key(ip, endpoint)
    now = time.time()

    try:
        pipe = r.pipeline()
        pipe.zremrangebyscore(key, 0, now - window_seconds)
        pipe.zcard(key)
        pipe.zadd(key, {str(now): now})
        pipe.expire(key, window_seconds + 1)
        current_count = (await pipe.execute())[1]

        if current_count >= max_requests:
            oldest = await r.zrange(key, 0, 0, withscores=True)
            retry_after = int(window_seconds - (now - oldest[0][1])) + 1 if oldest else window_seconds
            logger.warning("rate_limit_exceeded",
                ip=ip[:8] + "...", endpoint=endpoint, count=current_count, limit=max_requests)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Max {max_requests} requests per {window_seconds}s.",
                headers={"Retry-After": str(retry_after)},
            )
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("rate_limit_check_failed", error=str(e))
        if client is None:
            _mark_down(e)


async def rate_limit_submit(request: Request) -> None:
    """Submissions hit GitHub, the oracle and the ledger. Keep them scarce."""
    await check_rate_limit(
        request,
        endpoint="submit",
        max_requests=settings.RATE_LIMIT_SUBMIT,
        window_seconds=settings.RATE_LIMIT_WINDOW,
    )
