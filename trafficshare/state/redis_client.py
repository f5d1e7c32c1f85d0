"""trafficshare/state/redis_client.py — Shared Redis connection helper.

Session state, user accounts and the background-task registry all live in
the same Redis instance.  Callers treat a None return as "store unavailable"
and degrade according to their own contract.
"""
import logging

import redis as redis_lib

from trafficshare.config import settings

logger = logging.getLogger(__name__)


def get_redis() -> "redis_lib.Redis | None":
    """Return a connected Redis client, or None if unavailable."""
    try:
        r = redis_lib.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            decode_responses=True,
        )
        r.ping()
        return r
    except redis_lib.RedisError as exc:
        logger.warning("Redis unavailable: %s", exc)
        return None
