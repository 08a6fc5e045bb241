"""Redis client used by the lease lock backend, plus its health check."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from brandforge.core.config import get_settings


@lru_cache(maxsize=1)
def get_client() -> Redis:
    settings = get_settings()
    # Lease tokens are compared as text by the release script.
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )


def reset_client_cache() -> None:
    get_client.cache_clear()


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        get_client().ping()
        return True, None
    except RedisError as exc:  # pragma: no cover
        return False, str(exc)
