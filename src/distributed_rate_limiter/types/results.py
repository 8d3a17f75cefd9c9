# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Decision and result types for admission checks.

Engines return plain decision dataclasses. The admission facade wraps them
in a closed result union so callers handle each outcome explicitly:

    match result:
        case Allowed(detail=decision):
            ...
        case Denied(detail=decision):
            ...  # 429, back off
        case Unavailable(reason=reason):
            ...  # 503, retry or fail over

Denial and infrastructure failure are separate variants and must never be
merged by callers.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Generic, NoReturn, TypeVar, Union

from ..exceptions import ServiceUnavailableError, TooManyRequestsError
from .state import Reservation

T = TypeVar("T")


class Decision(Enum):
    """Discriminant shared by every AdmissionResult variant."""

    ALLOWED = "allowed"
    DENIED = "denied"
    UNAVAILABLE = "unavailable"


class UnavailableReason(Enum):
    """Why no admission decision could be made."""

    LOCK_CONTENTION = "lock_contention"
    LOCK_MANAGER_UNAVAILABLE = "lock_manager_unavailable"
    STORE_ERROR = "store_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TokenBucketDecision:
    """
    Outcome of one token bucket admission check.

    Attributes:
        allowed: Whether a token was consumed for this request
        tokens_left: Tokens remaining after the check (reported on denial too)
        retry_after_seconds: Time until one full token is available, 0 when allowed
    """

    allowed: bool
    tokens_left: float
    retry_after_seconds: float = 0.0


@dataclass(frozen=True)
class TokenUsageDecision:
    """
    Outcome of one token usage reservation.

    Attributes:
        allowed: Whether the estimated tokens were reserved
        tokens_used: Tokens used in the window after this call
        tokens_reserved: Tokens reserved by this call (0 when denied)
        tokens_remaining: Budget left in the window, never negative
        window_start_timestamp: Epoch ms start of the window the reservation belongs to
    """

    allowed: bool
    tokens_used: int
    tokens_reserved: int
    tokens_remaining: int
    window_start_timestamp: int

    @property
    def reservation(self) -> Reservation | None:
        """The handle to pass to reconcile, or None when denied."""
        if not self.allowed:
            return None
        return Reservation(
            tokens_reserved=self.tokens_reserved,
            window_start_timestamp=self.window_start_timestamp,
        )


@dataclass(frozen=True)
class TokenUsageAdjustment:
    """
    What a reconciliation did to the usage counter.

    Attributes:
        delta: tokens_reserved - actual_tokens as requested by the caller
        applied: Signed change actually applied to tokens_used
        tokens_used: Counter value after the adjustment
        window_mismatch: True when the stored window differed from the reservation's
    """

    delta: int
    applied: int
    tokens_used: int
    window_mismatch: bool = False


@dataclass(frozen=True)
class Allowed(Generic[T]):
    """The request may proceed."""

    detail: T
    decision: ClassVar[Decision] = Decision.ALLOWED

    def raise_for_status(self) -> None:
        return None


@dataclass(frozen=True)
class Denied(Generic[T]):
    """The request exceeded its budget."""

    detail: T
    decision: ClassVar[Decision] = Decision.DENIED

    def raise_for_status(self) -> NoReturn:
        raise TooManyRequestsError(retry_after=retry_after(self))


@dataclass(frozen=True)
class Unavailable:
    """No decision could be made because infrastructure failed."""

    reason: UnavailableReason
    error: BaseException | None = None
    decision: ClassVar[Decision] = Decision.UNAVAILABLE

    def raise_for_status(self) -> NoReturn:
        raise ServiceUnavailableError() from self.error


AdmissionResult = Union[Allowed[T], Denied[T], Unavailable]


def http_status(result: "Allowed[T] | Denied[T] | Unavailable") -> int:
    """Map a result to the HTTP status a request handler should use."""
    if result.decision is Decision.ALLOWED:
        return 200
    if result.decision is Decision.DENIED:
        return TooManyRequestsError.status_code
    return ServiceUnavailableError.status_code


def retry_after(result: "Allowed[T] | Denied[T] | Unavailable") -> float | None:
    """
    Suggest a Retry-After value in whole seconds for a denied result.

    Bucket denials use the time until the next token. Usage denials have no
    meaningful hint before the window rolls over, so None is returned.
    """
    if not isinstance(result, Denied):
        return None
    detail = result.detail
    if isinstance(detail, TokenBucketDecision) and detail.retry_after_seconds > 0:
        return float(math.ceil(detail.retry_after_seconds))
    return None


__all__ = [
    "AdmissionResult",
    "Allowed",
    "Decision",
    "Denied",
    "TokenBucketDecision",
    "TokenUsageAdjustment",
    "TokenUsageDecision",
    "Unavailable",
    "UnavailableReason",
    "http_status",
    "retry_after",
]
