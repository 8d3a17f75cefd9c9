# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Fixed-window token usage with two-phase accounting.

Phase 1 (reserve) charges an estimate before the expensive work starts.
Phase 2 (reconcile) corrects the charge once the real cost is known:

- actual < reserved: the unused part is released back to the window
- actual > reserved: the shortfall is charged, even past the limit
- actual == reserved: nothing is written

Both phases must run inside the lock for the state key. Windows are aligned
to multiples of the window size since the epoch, so every instance agrees on
where a window starts.
"""

import logging
import math
from typing import Any

from redis.exceptions import RedisError

from ..clock import MS_PER_SECOND
from ..config import TokenUsageConfig
from ..exceptions import StateStoreError
from ..types.results import TokenUsageAdjustment, TokenUsageDecision
from ..types.state import TOKEN_USAGE_FIELD_TOKENS_USED, TokenUsageState

logger = logging.getLogger(__name__)


def window_start_for(now_ms: int, window_size_ms: int) -> int:
    """Start of the fixed window containing now_ms."""
    return (now_ms // window_size_ms) * window_size_ms


def window_ttl_seconds(window_start_ms: int, window_size_ms: int, now_ms: int) -> int:
    """Seconds until the window ends, rounded up and at least 1."""
    window_end_ms = window_start_ms + window_size_ms
    return max(1, math.ceil((window_end_ms - now_ms) / MS_PER_SECOND))


async def get_token_usage_state(redis: Any, key: str) -> TokenUsageState | None:
    """Read the usage counter. Returns None if the key does not exist."""
    try:
        data = await redis.hgetall(key)
    except RedisError as e:
        raise StateStoreError(f"Failed to read token usage {key}: {e}", key=key) from e
    return TokenUsageState.from_hash(data or {})


async def reset_token_usage_window(
    redis: Any, key: str, window_start_ms: int, ttl_seconds: int
) -> TokenUsageState:
    """Overwrite the counter with (0, window_start_ms) and set its TTL atomically."""
    state = TokenUsageState(tokens_used=0, window_start_timestamp=window_start_ms)
    try:
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=state.to_hash())
            pipe.expire(key, ttl_seconds)
            await pipe.execute()
    except RedisError as e:
        raise StateStoreError(f"Failed to reset token usage {key}: {e}", key=key) from e
    return state


async def increment_token_usage(
    redis: Any, key: str, amount: int, ttl_seconds: int
) -> int:
    """
    Add amount (may be negative) to tokens_used and refresh the TTL.

    Returns:
        The counter value after the increment
    """
    try:
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, TOKEN_USAGE_FIELD_TOKENS_USED, amount)
            pipe.expire(key, ttl_seconds)
            new_value, _ = await pipe.execute()
    except RedisError as e:
        raise StateStoreError(f"Failed to update token usage {key}: {e}", key=key) from e
    return int(new_value)


async def ensure_current_window(
    redis: Any,
    key: str,
    config: TokenUsageConfig,
    now_ms: int,
    user_id: str | int | None = None,
) -> TokenUsageState:
    """
    Return the counter for the current window, resetting it if it rolled over.

    A counter already in the current window is returned untouched, so calling
    this repeatedly within a window never changes state.
    """
    current_window = window_start_for(now_ms, config.window_size_ms)
    state = await get_token_usage_state(redis, key)

    if state is not None and state.window_start_timestamp == current_window:
        return state

    if state is not None:
        logger.info(
            f"Window changed for user {user_id}, resetting token usage: "
            f"old_window_start={state.window_start_timestamp}, "
            f"new_window_start={current_window}"
        )

    return await reset_token_usage_window(
        redis,
        key,
        current_window,
        window_ttl_seconds(current_window, config.window_size_ms, now_ms),
    )


async def reserve_token_usage(
    redis: Any,
    key: str,
    config: TokenUsageConfig,
    now_ms: int,
    user_id: str | int | None = None,
) -> TokenUsageDecision:
    """
    Reserve config.estimated_tokens from the current window if the budget allows.

    Args:
        redis: redis.asyncio client holding usage state
        key: State key for the (service, limiter, user) triple
        config: Usage limiter configuration
        now_ms: Current time in epoch milliseconds
        user_id: Only used for log context

    Returns:
        TokenUsageDecision; tokens_reserved is 0 when denied

    Raises:
        StateStoreError: If a Redis command fails
    """
    state = await ensure_current_window(redis, key, config, now_ms, user_id)
    estimated = config.estimated_tokens
    limit = config.window_tokens_limit

    logger.debug(
        f"Token usage state before processing for user {user_id}: "
        f"tokens_used={state.tokens_used}, window_start={state.window_start_timestamp}, "
        f"estimated_tokens={estimated}, window_tokens_limit={limit}"
    )

    if state.tokens_used + estimated > limit:
        tokens_remaining = max(0, limit - state.tokens_used)
        logger.warning(
            f"Token usage denied request for user {user_id} on "
            f"{config.service_name}/{config.limiter_name}: not enough tokens "
            f"(tokens_used={state.tokens_used}, estimated_tokens={estimated}, "
            f"tokens_remaining={tokens_remaining})"
        )
        return TokenUsageDecision(
            allowed=False,
            tokens_used=state.tokens_used,
            tokens_reserved=0,
            tokens_remaining=tokens_remaining,
            window_start_timestamp=state.window_start_timestamp,
        )

    new_tokens_used = await increment_token_usage(
        redis,
        key,
        estimated,
        window_ttl_seconds(state.window_start_timestamp, config.window_size_ms, now_ms),
    )
    tokens_remaining = limit - new_tokens_used

    logger.debug(
        f"Token usage allowed request for user {user_id}: tokens_used={new_tokens_used}, "
        f"tokens_reserved={estimated}, tokens_remaining={tokens_remaining}"
    )
    return TokenUsageDecision(
        allowed=True,
        tokens_used=new_tokens_used,
        tokens_reserved=estimated,
        tokens_remaining=max(0, tokens_remaining),
        window_start_timestamp=state.window_start_timestamp,
    )


async def reconcile_token_usage(
    redis: Any,
    key: str,
    config: TokenUsageConfig,
    actual_tokens: int,
    tokens_reserved: int,
    window_start_timestamp: int,
    now_ms: int,
    user_id: str | int | None = None,
) -> TokenUsageAdjustment:
    """
    Correct a reservation to the measured cost.

    If the stored window differs from the reservation's window, a warning is
    logged and the adjustment is applied to the stored counter anyway. A
    release never takes tokens_used below zero.

    Raises:
        ValueError: If actual_tokens or tokens_reserved is negative
        StateStoreError: If a Redis command fails
    """
    if actual_tokens < 0:
        raise ValueError(f"actual_tokens must not be negative, got {actual_tokens}")
    if tokens_reserved < 0:
        raise ValueError(f"tokens_reserved must not be negative, got {tokens_reserved}")

    state = await get_token_usage_state(redis, key)
    if state is None:
        # Expired since the reservation; recreate it in the current window
        current_window = window_start_for(now_ms, config.window_size_ms)
        state = await reset_token_usage_window(
            redis,
            key,
            current_window,
            window_ttl_seconds(current_window, config.window_size_ms, now_ms),
        )

    window_mismatch = state.window_start_timestamp != window_start_timestamp
    if window_mismatch:
        logger.warning(
            f"Window mismatch for user {user_id} during token usage update: "
            f"expected_window={window_start_timestamp}, "
            f"current_window={state.window_start_timestamp}, "
            f"actual_tokens={actual_tokens}, reserved_tokens={tokens_reserved}"
        )

    delta = tokens_reserved - actual_tokens
    ttl = window_ttl_seconds(state.window_start_timestamp, config.window_size_ms, now_ms)

    if delta == 0:
        logger.debug(
            f"Token usage update for user {user_id}: no adjustment needed "
            f"(tokens_used={state.tokens_used})"
        )
        return TokenUsageAdjustment(
            delta=0,
            applied=0,
            tokens_used=state.tokens_used,
            window_mismatch=window_mismatch,
        )

    if delta > 0:
        release = min(delta, max(0, state.tokens_used))
        new_tokens_used = state.tokens_used
        if release > 0:
            new_tokens_used = await increment_token_usage(redis, key, -release, ttl)
        logger.info(
            f"Token usage update for user {user_id}: released excess tokens "
            f"(actual_tokens={actual_tokens}, reserved_tokens={tokens_reserved}, "
            f"released={release}, tokens_used_before={state.tokens_used}, "
            f"tokens_used_after={new_tokens_used})"
        )
        return TokenUsageAdjustment(
            delta=delta,
            applied=-release,
            tokens_used=new_tokens_used,
            window_mismatch=window_mismatch,
        )

    shortfall = -delta
    new_tokens_used = await increment_token_usage(redis, key, shortfall, ttl)
    logger.warning(
        f"Token usage update for user {user_id}: actual tokens exceeded reserved "
        f"(actual_tokens={actual_tokens}, reserved_tokens={tokens_reserved}, "
        f"charged={shortfall}, tokens_used_before={state.tokens_used}, "
        f"tokens_used_after={new_tokens_used})"
    )
    return TokenUsageAdjustment(
        delta=delta,
        applied=shortfall,
        tokens_used=new_tokens_used,
        window_mismatch=window_mismatch,
    )


__all__ = [
    "ensure_current_window",
    "get_token_usage_state",
    "increment_token_usage",
    "reconcile_token_usage",
    "reserve_token_usage",
    "reset_token_usage_window",
    "window_start_for",
    "window_ttl_seconds",
]
