# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Distributed Rate Limiter - Admission control shared across service instances.

This library enforces per-user limits whose state lives in Redis, so every
instance of a horizontally scaled service makes consistent decisions.

Key Features:
    - Token bucket limiting of request rate with continuous refill
    - Fixed-window token usage budgets with reserve/reconcile accounting
    - Per-user distributed locks (Redlock) around every state change
    - Three-way results: Allowed, Denied (429) and Unavailable (503)
    - Optional Prometheus metrics

Quick Start:
    >>> from distributed_rate_limiter import (
    ...     AdmissionController, Settings, TokenUsageConfig, Allowed,
    ... )
    >>>
    >>> usage = TokenUsageConfig(
    ...     service_name="chat", limiter_name="daily-tokens",
    ...     window_tokens_limit=100_000, window_size_seconds=86_400,
    ...     estimated_tokens=500, lock_ttl_ms=500,
    ... )
    >>> async with await AdmissionController.from_settings(Settings.from_env()) as rl:
    ...     result = await rl.reserve_token_usage(user_id, usage)
    ...     match result:
    ...         case Allowed(detail=decision):
    ...             actual = await call_model()
    ...             rl.schedule_reconcile(user_id, actual, decision.reservation, usage)
    ...         case _:
    ...             result.raise_for_status()

Main Exports:
    - AdmissionController: The admission facade
    - TokenBucketConfig, TokenUsageConfig, Settings: Configuration
    - Allowed, Denied, Unavailable: Result variants
    - Redlock, LockCoordinator, with_lock: Distributed locking
    - AdmissionMetrics: Prometheus metrics

Version: 1.0.0
"""

__version__ = "1.0.0"

from .admission import AdmissionController, run_admission_check
from .config import DEFAULT_KEY_PREFIX, Settings, TokenBucketConfig, TokenUsageConfig
from .exceptions import (
    BackendConnectionError,
    ConfigurationError,
    HTTPError,
    LockContentionError,
    LockError,
    LockManagerUnavailableError,
    LockReleaseError,
    RateLimiterError,
    ServiceUnavailableError,
    StateStoreError,
    TooManyRequestsError,
)
from .keys import KeyBuilder, lock_key, state_key
from .locking import (
    Lock,
    LockCoordinator,
    LockHandleProtocol,
    LockManagerProtocol,
    Redlock,
    with_lock,
)
from .observability import AdmissionMetrics
from .types import (
    AdmissionResult,
    Allowed,
    Decision,
    Denied,
    Reservation,
    TokenBucketDecision,
    TokenUsageAdjustment,
    TokenUsageDecision,
    Unavailable,
    UnavailableReason,
    http_status,
    retry_after,
)

__all__ = [
    # Facade
    "AdmissionController",
    "run_admission_check",
    # Configuration
    "DEFAULT_KEY_PREFIX",
    "Settings",
    "TokenBucketConfig",
    "TokenUsageConfig",
    # Keys
    "KeyBuilder",
    "lock_key",
    "state_key",
    # Locking
    "Lock",
    "LockCoordinator",
    "LockHandleProtocol",
    "LockManagerProtocol",
    "Redlock",
    "with_lock",
    # Results
    "AdmissionResult",
    "Allowed",
    "Decision",
    "Denied",
    "Reservation",
    "TokenBucketDecision",
    "TokenUsageAdjustment",
    "TokenUsageDecision",
    "Unavailable",
    "UnavailableReason",
    "http_status",
    "retry_after",
    # Observability
    "AdmissionMetrics",
    # Exceptions
    "BackendConnectionError",
    "ConfigurationError",
    "HTTPError",
    "LockContentionError",
    "LockError",
    "LockManagerUnavailableError",
    "LockReleaseError",
    "RateLimiterError",
    "ServiceUnavailableError",
    "StateStoreError",
    "TooManyRequestsError",
    # Version
    "__version__",
]
