# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Type definitions for limiter state and admission results."""

from .results import (
    AdmissionResult,
    Allowed,
    Decision,
    Denied,
    TokenBucketDecision,
    TokenUsageAdjustment,
    TokenUsageDecision,
    Unavailable,
    UnavailableReason,
    http_status,
    retry_after,
)
from .state import Reservation, TokenBucketState, TokenUsageState

__all__ = [
    # Results
    "AdmissionResult",
    "Allowed",
    "Decision",
    "Denied",
    # State
    "Reservation",
    "TokenBucketDecision",
    "TokenBucketState",
    "TokenUsageAdjustment",
    "TokenUsageDecision",
    "TokenUsageState",
    "Unavailable",
    "UnavailableReason",
    "http_status",
    "retry_after",
]
