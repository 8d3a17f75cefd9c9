# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Run a critical section under a distributed lock.

The coordinator acquires the lock, runs the critical section exactly once,
and always attempts to release the lock. Release failures are logged and
swallowed: the lock TTL bounds how long a stuck lock can live. A lock whose
validity ran out before the critical section finished is logged at warning.

Critical-section failures are re-raised unchanged and only logged at debug
here; callers classify and log them.

A started critical section is never cancelled by the coordinator. Callers
needing a timeout must bound the critical section's own work.
"""

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from ..exceptions import LockContentionError
from ..observability.metrics import AdmissionMetrics
from .base import LockHandleProtocol, LockManagerProtocol

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockCoordinator:
    """
    Scoped-resource wrapper around a lock manager.

    Example:
        >>> coordinator = LockCoordinator(redlock)
        >>> result = await coordinator.run("rl:svc:api:42:lock", 500, critical_section)
    """

    def __init__(
        self,
        lock_manager: LockManagerProtocol,
        metrics: AdmissionMetrics | None = None,
    ) -> None:
        self._lock_manager = lock_manager
        self._metrics = metrics

    @asynccontextmanager
    async def hold(self, resource_key: str, ttl_ms: int) -> AsyncIterator[LockHandleProtocol]:
        """
        Hold the lock for resource_key for the duration of the block.

        Raises:
            LockContentionError: Another owner holds the lock.
            Exception: Any other acquisition failure, unchanged.
        """
        start = time.perf_counter()

        try:
            lock = await self._lock_manager.acquire([resource_key], ttl_ms)
        except LockContentionError:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._observe_acquire("contention", start)
            logger.warning(
                f"Failed to acquire lock due to contention for {resource_key} "
                f"after {elapsed_ms:.1f}ms"
            )
            raise
        except Exception:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._observe_acquire("error", start)
            logger.error(
                f"Failed to acquire lock due to unknown error for {resource_key} "
                f"after {elapsed_ms:.1f}ms",
                exc_info=True,
            )
            raise

        self._observe_acquire("acquired", start)
        logger.debug(
            f"Lock acquired for {resource_key} in "
            f"{(time.perf_counter() - start) * 1000:.1f}ms"
        )

        try:
            yield lock
        except Exception as e:
            logger.debug(
                f"Lock acquired, critical section failed for {resource_key} after "
                f"{(time.perf_counter() - start) * 1000:.1f}ms: {e!r}"
            )
            raise
        finally:
            if lock.expired:
                logger.warning(
                    f"Lock for {resource_key} expired before the critical section "
                    f"finished ({(time.perf_counter() - start) * 1000:.1f}ms, "
                    f"ttl {ttl_ms}ms)"
                )
            await self._release(lock, resource_key, start)

    async def run(
        self,
        resource_key: str,
        ttl_ms: int,
        critical_section: Callable[[], Awaitable[T]],
    ) -> T:
        """Acquire the lock, await critical_section() once, release the lock."""
        async with self.hold(resource_key, ttl_ms):
            return await critical_section()

    async def _release(
        self, lock: LockHandleProtocol, resource_key: str, start: float
    ) -> None:
        try:
            await lock.release()
        except Exception:
            logger.error(f"Failed to release lock for {resource_key}", exc_info=True)
            return
        logger.debug(
            f"Lock released for {resource_key}, total time: "
            f"{(time.perf_counter() - start) * 1000:.1f}ms"
        )

    def _observe_acquire(self, outcome: str, start: float) -> None:
        if self._metrics is not None:
            self._metrics.observe_lock_acquire(outcome, time.perf_counter() - start)


async def with_lock(
    lock_manager: LockManagerProtocol,
    resource_key: str,
    ttl_ms: int,
    critical_section: Callable[[], Awaitable[T]],
    metrics: AdmissionMetrics | None = None,
) -> T:
    """Run critical_section under a lock on resource_key. See LockCoordinator.run."""
    coordinator = LockCoordinator(lock_manager, metrics)
    return await coordinator.run(resource_key, ttl_ms, critical_section)


__all__ = ["LockCoordinator", "with_lock"]
