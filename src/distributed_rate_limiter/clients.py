# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Redis client lifecycle helpers.

Clients are created explicitly, checked for readiness once, and closed
explicitly. Nothing here is created at import time.
"""

import asyncio
import logging
from collections.abc import Awaitable, Sequence
from typing import Any, cast

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import Settings
from .exceptions import BackendConnectionError
from .locking.redlock import Redlock

logger = logging.getLogger(__name__)


def create_redis_client(url: str, connect_timeout_ms: int = 5000) -> Redis:
    """Create (but do not connect) a redis.asyncio client for url."""
    timeout = connect_timeout_ms / 1000
    return Redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=timeout,
        socket_timeout=timeout,
        retry_on_timeout=True,
    )


async def connect_redis_client(client: Any, ready_timeout_ms: int = 5000) -> None:
    """
    Wait until client answers PING.

    Raises:
        BackendConnectionError: If Redis does not answer within ready_timeout_ms
    """
    try:
        await asyncio.wait_for(
            cast(Awaitable[bool], client.ping()), timeout=ready_timeout_ms / 1000
        )
    except asyncio.TimeoutError as e:
        raise BackendConnectionError(
            f"Redis did not become ready within {ready_timeout_ms}ms"
        ) from e
    except (RedisError, OSError) as e:
        raise BackendConnectionError(f"Failed to connect to Redis: {e}") from e
    logger.info("Connected to Redis")


async def close_redis_client(client: Any, timeout: float = 2.5) -> None:
    """Close client, logging (not raising) failures and timeouts."""
    try:
        if hasattr(client, "aclose"):
            await asyncio.wait_for(client.aclose(), timeout=timeout)
        else:
            await asyncio.wait_for(client.close(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Redis connection cleanup timed out")
    except Exception as e:
        logger.error(f"Error during Redis connection cleanup: {e}")


def create_redlock(clients: Sequence[Any], settings: Settings) -> Redlock:
    """Build a Redlock over clients using the retry policy in settings."""
    return Redlock(
        clients,
        retry_count=settings.redlock_retry_count,
        retry_delay_ms=settings.redlock_retry_delay_ms,
        retry_jitter_ms=settings.redlock_retry_jitter_ms,
    )


__all__ = [
    "close_redis_client",
    "connect_redis_client",
    "create_redis_client",
    "create_redlock",
]
