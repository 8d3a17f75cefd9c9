# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Limiter algorithms over Redis hashes.

Every function here assumes the caller holds the lock for the state key.
"""

from .token_bucket import (
    TOKEN_CONSUMPTION_PER_REQUEST,
    get_token_bucket_state,
    process_token_bucket,
    refill,
    save_token_bucket_state,
)
from .token_usage import (
    ensure_current_window,
    get_token_usage_state,
    increment_token_usage,
    reconcile_token_usage,
    reserve_token_usage,
    reset_token_usage_window,
    window_start_for,
    window_ttl_seconds,
)

__all__ = [
    # Token bucket
    "TOKEN_CONSUMPTION_PER_REQUEST",
    "get_token_bucket_state",
    "process_token_bucket",
    "refill",
    "save_token_bucket_state",
    # Token usage
    "ensure_current_window",
    "get_token_usage_state",
    "increment_token_usage",
    "reconcile_token_usage",
    "reserve_token_usage",
    "reset_token_usage_window",
    "window_start_for",
    "window_ttl_seconds",
]
