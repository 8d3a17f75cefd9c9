# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Admission facade combining keys, locking and the limiter engines.

Each check builds the state and lock keys for (service, limiter, user),
runs the engine under the lock, and returns an AdmissionResult:

- Allowed(detail): proceed
- Denied(detail): budget exhausted (HTTP 429)
- Unavailable(reason, error): lock or Redis failure (HTTP 503)

The controller fails closed: a request that could not be checked is never
reported as allowed.

Bucket and usage state use separate keys and locks, so one triple can be
limited on rate and on cost at the same time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any, TypeVar

from .clients import (
    close_redis_client,
    connect_redis_client,
    create_redis_client,
    create_redlock,
)
from .clock import Clock, current_time_ms
from .config import Settings, TokenBucketConfig, TokenUsageConfig
from .engines.token_bucket import process_token_bucket
from .engines.token_usage import reconcile_token_usage as reconcile_usage
from .engines.token_usage import reserve_token_usage as reserve_usage
from .exceptions import (
    LockContentionError,
    LockManagerUnavailableError,
    StateStoreError,
)
from .keys import KeyBuilder
from .locking.base import LockManagerProtocol
from .locking.coordinator import LockCoordinator
from .observability.metrics import AdmissionMetrics
from .types.results import (
    AdmissionResult,
    Allowed,
    Denied,
    TokenBucketDecision,
    TokenUsageDecision,
    Unavailable,
    UnavailableReason,
)
from .types.state import Reservation

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALGORITHM_TOKEN_BUCKET = "token_bucket"
ALGORITHM_TOKEN_USAGE = "token_usage"


class AdmissionController:
    """
    Entry point for admission checks.

    Example:
        >>> async with await AdmissionController.from_settings(Settings.from_env()) as rl:
        ...     result = await rl.check_token_bucket(user_id, bucket_config)
        ...     if http_status(result) != 200:
        ...         result.raise_for_status()
    """

    def __init__(
        self,
        redis: Any,
        lock_manager: LockManagerProtocol,
        key_builder: KeyBuilder | None = None,
        clock: Clock = current_time_ms,
        metrics: AdmissionMetrics | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            redis: redis.asyncio client holding limiter state
            lock_manager: Distributed lock manager guarding state keys
            key_builder: Key naming (default prefix when None)
            clock: Returns epoch milliseconds; read once per critical section
            metrics: Optional Prometheus metrics; nothing is recorded when None
        """
        self._redis = redis
        self._keys = key_builder or KeyBuilder()
        self._clock = clock
        self._metrics = metrics
        self._coordinator = LockCoordinator(lock_manager, metrics)

        self._pending: set[asyncio.Task[None]] = set()
        self._owned_clients: list[Any] = []
        self._closed = False

    @classmethod
    async def from_settings(
        cls,
        settings: Settings,
        metrics: AdmissionMetrics | None = None,
    ) -> AdmissionController:
        """
        Create, connect and own all Redis clients described by settings.

        Lock nodes sharing the state Redis URL reuse the state client.

        Raises:
            BackendConnectionError: If any client fails its readiness check.
                Clients created so far are closed first.
        """
        timeout_ms = settings.redis_connect_timeout_ms
        redis = create_redis_client(settings.redis_url, timeout_ms)
        owned = [redis]
        lock_clients = []
        for url in settings.lock_redis_urls:
            if url == settings.redis_url:
                lock_clients.append(redis)
            else:
                client = create_redis_client(url, timeout_ms)
                owned.append(client)
                lock_clients.append(client)

        try:
            for client in owned:
                await connect_redis_client(client, timeout_ms)
        except Exception:
            for client in owned:
                await close_redis_client(client)
            raise

        controller = cls(
            redis,
            create_redlock(lock_clients, settings),
            key_builder=KeyBuilder(settings.key_prefix),
            metrics=metrics,
        )
        controller._owned_clients = owned
        logger.info(
            f"Admission controller ready with {len(lock_clients)} lock node(s), "
            f"key prefix {settings.key_prefix!r}"
        )
        return controller

    async def check_token_bucket(
        self, user_id: str | int, config: TokenBucketConfig
    ) -> AdmissionResult[TokenBucketDecision]:
        """Consume one request token from the user's bucket."""
        triple = (config.service_name, config.limiter_name, user_id)
        state_key = self._keys.bucket_state_key(*triple)
        lock_key = self._keys.bucket_lock_key(*triple)

        async def critical_section() -> TokenBucketDecision:
            return await process_token_bucket(
                self._redis, state_key, config, self._clock(), user_id
            )

        result: AdmissionResult[TokenBucketDecision]
        try:
            decision = await self._coordinator.run(
                lock_key, config.lock_ttl_ms, critical_section
            )
        except Exception as e:
            result = self._unavailable(e, config.service_name, config.limiter_name, user_id)
        else:
            if decision.allowed:
                logger.info(
                    f"Token bucket allowed request for user {user_id} on "
                    f"{config.service_name}/{config.limiter_name}"
                )
                result = Allowed(decision)
            else:
                result = Denied(decision)

        self._record_decision(
            config.service_name, config.limiter_name, ALGORITHM_TOKEN_BUCKET, result
        )
        return result

    async def reserve_token_usage(
        self, user_id: str | int, config: TokenUsageConfig
    ) -> AdmissionResult[TokenUsageDecision]:
        """
        Reserve config.estimated_tokens from the user's current window.

        On Allowed, keep result.detail.reservation and pass it to
        reconcile_token_usage (or schedule_reconcile) once the real cost is known.
        """
        triple = (config.service_name, config.limiter_name, user_id)
        state_key = self._keys.usage_state_key(*triple)
        lock_key = self._keys.usage_lock_key(*triple)

        async def critical_section() -> TokenUsageDecision:
            return await reserve_usage(
                self._redis, state_key, config, self._clock(), user_id
            )

        result: AdmissionResult[TokenUsageDecision]
        try:
            decision = await self._coordinator.run(
                lock_key, config.lock_ttl_ms, critical_section
            )
        except Exception as e:
            result = self._unavailable(e, config.service_name, config.limiter_name, user_id)
        else:
            if decision.allowed:
                logger.info(
                    f"Token usage reserved {decision.tokens_reserved} tokens for user "
                    f"{user_id} on {config.service_name}/{config.limiter_name}"
                )
                result = Allowed(decision)
            else:
                result = Denied(decision)

        self._record_decision(
            config.service_name, config.limiter_name, ALGORITHM_TOKEN_USAGE, result
        )
        return result

    check_and_reserve_token_usage = reserve_token_usage

    async def reconcile_token_usage(
        self,
        user_id: str | int,
        actual_tokens: int,
        reservation: Reservation,
        config: TokenUsageConfig,
    ) -> None:
        """
        Correct a reservation to the measured cost.

        Infrastructure failures are logged and swallowed: the reservation
        then stays charged, which errs on the conservative side.

        Raises:
            ValueError: If actual_tokens is negative
        """
        if actual_tokens < 0:
            raise ValueError(f"actual_tokens must not be negative, got {actual_tokens}")

        triple = (config.service_name, config.limiter_name, user_id)
        state_key = self._keys.usage_state_key(*triple)
        lock_key = self._keys.usage_lock_key(*triple)

        async def critical_section() -> None:
            adjustment = await reconcile_usage(
                self._redis,
                state_key,
                config,
                actual_tokens,
                reservation.tokens_reserved,
                reservation.window_start_timestamp,
                self._clock(),
                user_id,
            )
            if adjustment.applied < 0:
                outcome = "released"
            elif adjustment.applied > 0:
                outcome = "charged"
            else:
                outcome = "noop"
            self._record_reconciliation(config.service_name, config.limiter_name, outcome)

        try:
            await self._coordinator.run(lock_key, config.lock_ttl_ms, critical_section)
        except Exception as e:
            self._record_reconciliation(config.service_name, config.limiter_name, "failed")
            if isinstance(e, (LockContentionError, LockManagerUnavailableError, StateStoreError)):
                logger.error(
                    f"Failed to update token usage for user {user_id} on "
                    f"{config.service_name}/{config.limiter_name}: {e}"
                )
            else:
                logger.exception(
                    f"Unexpected error updating token usage for user {user_id} on "
                    f"{config.service_name}/{config.limiter_name}"
                )

    def schedule_reconcile(
        self,
        user_id: str | int,
        actual_tokens: int,
        reservation: Reservation,
        config: TokenUsageConfig,
    ) -> asyncio.Task[None]:
        """
        Run reconcile_token_usage in the background and return its task.

        The controller keeps a reference until the task finishes, and aclose()
        waits for pending tasks. Must be called from a running event loop.

        Raises:
            ValueError: If actual_tokens is negative
            RuntimeError: If the controller is closed
        """
        if self._closed:
            raise RuntimeError("AdmissionController is closed")
        if actual_tokens < 0:
            raise ValueError(f"actual_tokens must not be negative, got {actual_tokens}")

        task = asyncio.create_task(
            self.reconcile_token_usage(user_id, actual_tokens, reservation, config),
            name=f"reconcile:{config.service_name}:{config.limiter_name}:{user_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending_reconciliations(self) -> int:
        return len(self._pending)

    async def aclose(self) -> None:
        """Wait for scheduled reconciliations, then close owned clients."""
        if self._closed:
            return
        self._closed = True

        if self._pending:
            logger.debug(f"Waiting for {len(self._pending)} pending reconciliation(s)")
            await asyncio.gather(*self._pending, return_exceptions=True)

        for client in self._owned_clients:
            await close_redis_client(client)
        self._owned_clients = []

    async def __aenter__(self) -> AdmissionController:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _unavailable(
        self,
        error: Exception,
        service_name: str,
        limiter_name: str,
        user_id: str | int,
    ) -> Unavailable:
        context = f"user {user_id} on {service_name}/{limiter_name}"
        if isinstance(error, LockContentionError):
            logger.warning(f"Rate limit check skipped for {context}: lock is contended")
            return Unavailable(UnavailableReason.LOCK_CONTENTION, error)
        if isinstance(error, LockManagerUnavailableError):
            logger.error(f"Rate limit check failed for {context}: {error}")
            return Unavailable(UnavailableReason.LOCK_MANAGER_UNAVAILABLE, error)
        if isinstance(error, StateStoreError):
            logger.error(f"Rate limit check failed for {context}: {error}")
            return Unavailable(UnavailableReason.STORE_ERROR, error)
        logger.exception(f"Unexpected error during rate limit check for {context}")
        return Unavailable(UnavailableReason.UNKNOWN, error)

    def _record_decision(
        self,
        service_name: str,
        limiter_name: str,
        algorithm: str,
        result: Allowed[Any] | Denied[Any] | Unavailable,
    ) -> None:
        if self._metrics is not None:
            self._metrics.record_decision(
                service_name, limiter_name, algorithm, result.decision.value
            )

    def _record_reconciliation(
        self, service_name: str, limiter_name: str, outcome: str
    ) -> None:
        if self._metrics is not None:
            self._metrics.record_reconciliation(service_name, limiter_name, outcome)


async def run_admission_check(
    check: Callable[[], Awaitable[AdmissionResult[T]]],
) -> T:
    """
    Await check() and return the decision detail, raising for non-allowed results.

    Raises:
        TooManyRequestsError: On Denied
        ServiceUnavailableError: On Unavailable
    """
    result = await check()
    if isinstance(result, Allowed):
        return result.detail
    result.raise_for_status()


__all__ = [
    "ALGORITHM_TOKEN_BUCKET",
    "ALGORITHM_TOKEN_USAGE",
    "AdmissionController",
    "run_admission_check",
]
