# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Persisted limiter state and the caller-carried reservation.

State models use Pydantic for validation of the raw Redis hash values. Both
state kinds are stored as Redis hashes under keys built by keys.state_key.
"""

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Redis hash field names
TOKEN_BUCKET_FIELD_TOKENS = "tokens"
TOKEN_BUCKET_FIELD_LAST = "last"
TOKEN_USAGE_FIELD_TOKENS_USED = "tokensUsed"
TOKEN_USAGE_FIELD_WINDOW_START_TIMESTAMP = "windowStartTimestamp"


class TokenBucketState(BaseModel):
    """
    Token bucket state for one (service, limiter, user) triple.

    Attributes:
        tokens: Tokens currently available (fractional, never negative)
        last: Epoch milliseconds of the last refill computation
    """

    tokens: float = Field(ge=0)
    last: int

    @classmethod
    def from_hash(
        cls, data: dict[str, Any], bucket_size: int, now_ms: int
    ) -> "TokenBucketState":
        """
        Parse an HGETALL result, synthesizing a full bucket if absent.

        A hash missing either field is treated as absent, so a partially
        written state never leaks into a decision.
        """
        if TOKEN_BUCKET_FIELD_TOKENS not in data or TOKEN_BUCKET_FIELD_LAST not in data:
            return cls(tokens=float(bucket_size), last=now_ms)
        tokens = float(data[TOKEN_BUCKET_FIELD_TOKENS])
        if not math.isfinite(tokens):
            return cls(tokens=float(bucket_size), last=now_ms)
        return cls(
            tokens=min(max(tokens, 0.0), float(bucket_size)),
            last=int(float(data[TOKEN_BUCKET_FIELD_LAST])),
        )

    def to_hash(self) -> dict[str, str]:
        """Convert to a mapping for HSET."""
        return {
            TOKEN_BUCKET_FIELD_TOKENS: repr(self.tokens),
            TOKEN_BUCKET_FIELD_LAST: str(self.last),
        }


class TokenUsageState(BaseModel):
    """
    Fixed-window usage counter for one (service, limiter, user) triple.

    Attributes:
        tokens_used: Tokens consumed in the stored window
        window_start_timestamp: Epoch milliseconds at which the stored window began
    """

    tokens_used: int
    window_start_timestamp: int

    @classmethod
    def from_hash(cls, data: dict[str, Any]) -> "TokenUsageState | None":
        """Parse an HGETALL result. Returns None when the state does not exist."""
        if (
            TOKEN_USAGE_FIELD_TOKENS_USED not in data
            or TOKEN_USAGE_FIELD_WINDOW_START_TIMESTAMP not in data
        ):
            return None
        return cls(
            tokens_used=int(data[TOKEN_USAGE_FIELD_TOKENS_USED]),
            window_start_timestamp=int(data[TOKEN_USAGE_FIELD_WINDOW_START_TIMESTAMP]),
        )

    def to_hash(self) -> dict[str, str]:
        return {
            TOKEN_USAGE_FIELD_TOKENS_USED: str(self.tokens_used),
            TOKEN_USAGE_FIELD_WINDOW_START_TIMESTAMP: str(self.window_start_timestamp),
        }


class Reservation(BaseModel):
    """
    Handle returned by a successful token usage reservation.

    The caller keeps it until the real cost is known, then passes it to
    reconcile_token_usage exactly once. It is never stored in Redis, but
    model_dump() / model_validate() let callers carry it across a job queue.
    """

    model_config = ConfigDict(frozen=True)

    tokens_reserved: int = Field(ge=0)
    window_start_timestamp: int


__all__ = [
    "TOKEN_BUCKET_FIELD_LAST",
    "TOKEN_BUCKET_FIELD_TOKENS",
    "TOKEN_USAGE_FIELD_TOKENS_USED",
    "TOKEN_USAGE_FIELD_WINDOW_START_TIMESTAMP",
    "Reservation",
    "TokenBucketState",
    "TokenUsageState",
]
