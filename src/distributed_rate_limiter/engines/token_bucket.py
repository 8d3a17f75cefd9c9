# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Continuous-refill token bucket over a Redis hash.

Must run inside the lock for the bucket's lock key: the read, refill and
write below are separate Redis commands.

Refill is fractional. A bucket refilling at 0.5 tokens/s that is checked
every second gains half a token each time instead of nothing, so slow but
steady traffic is not under-credited.
"""

import logging
from typing import Any

from redis.exceptions import RedisError

from ..clock import MS_PER_SECOND
from ..config import TokenBucketConfig
from ..exceptions import StateStoreError
from ..types.results import TokenBucketDecision
from ..types.state import TokenBucketState

logger = logging.getLogger(__name__)

TOKEN_CONSUMPTION_PER_REQUEST = 1


def refill(state: TokenBucketState, config: TokenBucketConfig, now_ms: int) -> float:
    """
    Return the token count after refilling state up to now_ms.

    A clock that moved backwards adds nothing rather than removing tokens.
    """
    elapsed_seconds = max(0, now_ms - state.last) / MS_PER_SECOND
    tokens_to_add = elapsed_seconds * config.refill_rate
    return max(0.0, min(float(config.bucket_size), state.tokens + tokens_to_add))


async def get_token_bucket_state(
    redis: Any, key: str, config: TokenBucketConfig, now_ms: int
) -> TokenBucketState:
    """Read the bucket, synthesizing a full bucket at now_ms if absent."""
    try:
        data = await redis.hgetall(key)
    except RedisError as e:
        raise StateStoreError(f"Failed to read token bucket {key}: {e}", key=key) from e
    return TokenBucketState.from_hash(data or {}, config.bucket_size, now_ms)


async def save_token_bucket_state(
    redis: Any, key: str, state: TokenBucketState, ttl_seconds: int
) -> None:
    """Write both fields and refresh the TTL in one transaction."""
    try:
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=state.to_hash())
            pipe.expire(key, ttl_seconds)
            await pipe.execute()
    except RedisError as e:
        raise StateStoreError(f"Failed to write token bucket {key}: {e}", key=key) from e


async def process_token_bucket(
    redis: Any,
    key: str,
    config: TokenBucketConfig,
    now_ms: int,
    user_id: str | int | None = None,
) -> TokenBucketDecision:
    """
    Refill the bucket, then try to consume one token.

    The refilled state is persisted on denial too, so a user who was idle
    and then bursts gets correct partial credit on the next check.

    Args:
        redis: redis.asyncio client holding bucket state
        key: State key for the (service, limiter, user) triple
        config: Bucket configuration
        now_ms: Current time in epoch milliseconds
        user_id: Only used for log context

    Returns:
        TokenBucketDecision with allowed, tokens_left and retry_after_seconds

    Raises:
        StateStoreError: If a Redis command fails
    """
    state = await get_token_bucket_state(redis, key, config, now_ms)
    tokens = refill(state, config, now_ms)

    logger.debug(
        f"Token bucket state before processing for user {user_id}: "
        f"prev_tokens={state.tokens:.3f}, tokens_after_refill={tokens:.3f}, "
        f"elapsed_sec={max(0, now_ms - state.last) / MS_PER_SECOND:.2f}"
    )

    if tokens < TOKEN_CONSUMPTION_PER_REQUEST:
        await save_token_bucket_state(
            redis,
            key,
            TokenBucketState(tokens=tokens, last=now_ms),
            config.bucket_ttl_seconds,
        )
        retry_after = (TOKEN_CONSUMPTION_PER_REQUEST - tokens) / config.refill_rate
        logger.warning(
            f"Token bucket denied request for user {user_id} on "
            f"{config.service_name}/{config.limiter_name}: not enough tokens "
            f"({tokens:.3f}), retry after {retry_after:.2f}s"
        )
        return TokenBucketDecision(
            allowed=False,
            tokens_left=max(0.0, tokens),
            retry_after_seconds=retry_after,
        )

    tokens -= TOKEN_CONSUMPTION_PER_REQUEST
    await save_token_bucket_state(
        redis,
        key,
        TokenBucketState(tokens=tokens, last=now_ms),
        config.bucket_ttl_seconds,
    )

    logger.debug(f"Token bucket allowed request for user {user_id}, tokens_left={tokens:.3f}")
    return TokenBucketDecision(allowed=True, tokens_left=tokens)


__all__ = [
    "TOKEN_CONSUMPTION_PER_REQUEST",
    "get_token_bucket_state",
    "process_token_bucket",
    "refill",
    "save_token_bucket_state",
]
