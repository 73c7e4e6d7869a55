"""Request rate limiting for credential-bearing endpoints.

Login, PIN login and step-up verification are limited per client address.
Counters live in Redis when it answers at import time so that every API
worker shares them; otherwise each process counts on its own.
"""

import logging

import redis as sync_redis
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = ["100/minute"]


def _redis_reachable(url: str) -> bool:
    try:
        client = sync_redis.from_url(url, socket_connect_timeout=1)
        try:
            client.ping()
        finally:
            client.close()
    except sync_redis.RedisError:
        return False
    return True


def build_limiter() -> Limiter:
    if _redis_reachable(settings.REDIS_URL):
        logger.info("Rate limits stored in Redis (%s)", settings.REDIS_URL)
        return Limiter(
            key_func=get_remote_address,
            default_limits=DEFAULT_LIMITS,
            storage_uri=settings.REDIS_URL,
        )
    logger.warning("Rate limits kept in process memory; Redis unreachable")
    return Limiter(key_func=get_remote_address, default_limits=DEFAULT_LIMITS)


limiter = build_limiter()
