# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Quorum-based distributed lock over independent Redis nodes.

This module implements the Redlock algorithm on top of redis.asyncio:

- Each node is an independent Redis master (no replication between them)
- A lock is held when a majority of nodes accepted it and the time spent
  acquiring still leaves a positive validity window
- Failed attempts are rolled back on every node before retrying
- Release only deletes keys whose value is this lock's random owner token

Deployment Requirements:
- Redis 2.6+ (for Lua scripting)
- An odd number of nodes is recommended (1, 3 or 5)
"""

import asyncio
import logging
import random
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from redis.exceptions import RedisError

from ..exceptions import (
    ConfigurationError,
    LockContentionError,
    LockManagerUnavailableError,
    LockReleaseError,
)

logger = logging.getLogger(__name__)

# Sets every key only if none of them exists, so a node votes for all
# resources or for none.
ACQUIRE_SCRIPT = """
for i, key in ipairs(KEYS) do
    if redis.call("exists", key) == 1 then
        return 0
    end
end
for i, key in ipairs(KEYS) do
    redis.call("set", key, ARGV[1], "PX", ARGV[2])
end
return #KEYS
"""

# Deletes only keys still owned by ARGV[1]
RELEASE_SCRIPT = """
local count = 0
for i, key in ipairs(KEYS) do
    if redis.call("get", key) == ARGV[1] then
        redis.call("del", key)
        count = count + 1
    end
end
return count
"""


@dataclass
class Lock:
    """
    A lock held on a quorum of nodes.

    Attributes:
        resources: Resource keys covered by the lock
        value: Random owner token written to every node
        validity_ms: Remaining validity at the moment of acquisition
        expires_at: time.monotonic() deadline after which the lock is void
    """

    manager: "Redlock" = field(repr=False)
    resources: list[str]
    value: str
    validity_ms: int
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    async def release(self) -> None:
        """Release the lock on every node."""
        await self.manager.release(self)


class Redlock:
    """
    A distributed lock manager implementing the Redlock algorithm.

    Example:
        >>> redlock = Redlock([redis_a, redis_b, redis_c], retry_count=5)
        >>> lock = await redlock.acquire(["orders:42:lock"], ttl_ms=500)
        >>> try:
        ...     ...
        ... finally:
        ...     await lock.release()
    """

    DEFAULT_DRIFT_FACTOR = 0.01

    def __init__(
        self,
        clients: Sequence[Any],
        retry_count: int = 10,
        retry_delay_ms: int = 200,
        retry_jitter_ms: int = 200,
        drift_factor: float = DEFAULT_DRIFT_FACTOR,
    ) -> None:
        """
        Initialize the lock manager.

        Args:
            clients: One redis.asyncio client per independent lock node
            retry_count: Extra attempts after the first failed acquisition
            retry_delay_ms: Base delay between attempts
            retry_jitter_ms: Maximum random jitter added to each delay
            drift_factor: Fraction of the TTL reserved for clock drift
        """
        if not clients:
            raise ConfigurationError("Redlock requires at least one Redis client")
        if retry_count < 0:
            raise ConfigurationError("retry_count must not be negative")
        if retry_delay_ms < 0 or retry_jitter_ms < 0:
            raise ConfigurationError("retry delay and jitter must not be negative")
        if not 0 <= drift_factor < 1:
            raise ConfigurationError("drift_factor must be in [0, 1)")

        self._clients = list(clients)
        self.retry_count = retry_count
        self.retry_delay_ms = retry_delay_ms
        self.retry_jitter_ms = retry_jitter_ms
        self.drift_factor = drift_factor

        self._acquire_scripts = [c.register_script(ACQUIRE_SCRIPT) for c in self._clients]
        self._release_scripts = [c.register_script(RELEASE_SCRIPT) for c in self._clients]

    @property
    def quorum(self) -> int:
        return len(self._clients) // 2 + 1

    async def acquire(self, resources: list[str], ttl_ms: int) -> Lock:
        """
        Acquire a lock on resources for ttl_ms milliseconds.

        Raises:
            ConfigurationError: If resources is empty or ttl_ms is not positive
            LockContentionError: If the lock could not be obtained after all retries
            LockManagerUnavailableError: If no node answered on the last attempt
        """
        if not resources:
            raise ConfigurationError("at least one resource is required")
        if ttl_ms < 1:
            raise ConfigurationError(f"ttl_ms must be positive, got {ttl_ms}")

        resource_label = ",".join(resources)
        value = uuid.uuid4().hex
        attempts = self.retry_count + 1
        unreachable = 0

        for attempt in range(1, attempts + 1):
            start = time.monotonic()
            votes, unreachable = await self._attempt(resources, value, ttl_ms)

            elapsed_ms = (time.monotonic() - start) * 1000
            drift_ms = ttl_ms * self.drift_factor + 2
            validity_ms = ttl_ms - elapsed_ms - drift_ms

            if votes >= self.quorum and validity_ms > 0:
                return Lock(
                    manager=self,
                    resources=list(resources),
                    value=value,
                    validity_ms=int(validity_ms),
                    expires_at=start + validity_ms / 1000,
                )

            # Roll back partial acquisitions before retrying
            await self._release_all(resources, value)

            logger.debug(
                f"Lock attempt {attempt}/{attempts} for {resource_label} failed: "
                f"votes={votes}/{len(self._clients)}, unreachable={unreachable}, "
                f"validity_ms={validity_ms:.1f}"
            )

            if attempt < attempts:
                jitter = random.uniform(0, self.retry_jitter_ms)  # nosec B311 # noqa: S311
                await asyncio.sleep((self.retry_delay_ms + jitter) / 1000)

        if unreachable == len(self._clients):
            raise LockManagerUnavailableError(
                f"No lock node reachable while acquiring {resource_label}",
                resource=resource_label,
            )
        raise LockContentionError(
            f"Could not acquire lock for {resource_label} after {attempts} attempts",
            resource=resource_label,
        )

    async def release(self, lock: Lock) -> None:
        """
        Release a lock on every node.

        Raises:
            LockReleaseError: If fewer than a quorum of nodes confirmed the release
        """
        resource_label = ",".join(lock.resources)
        results = await asyncio.gather(
            *(
                script(keys=lock.resources, args=[lock.value], client=client)
                for script, client in zip(self._release_scripts, self._clients)
            ),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if not isinstance(error, RedisError):
                raise error

        confirmed = len(results) - len(errors)
        if confirmed < self.quorum:
            raise LockReleaseError(
                f"Release of {resource_label} confirmed by {confirmed}/"
                f"{len(self._clients)} nodes: {errors[0]!r}",
                resource=resource_label,
            )

        if not any(isinstance(r, int) and r > 0 for r in results):
            logger.debug(f"Lock for {resource_label} had already expired at release")

    async def _attempt(
        self, resources: list[str], value: str, ttl_ms: int
    ) -> tuple[int, int]:
        """Try every node once. Returns (votes, unreachable_nodes)."""
        results = await asyncio.gather(
            *(
                script(keys=resources, args=[value, ttl_ms], client=client)
                for script, client in zip(self._acquire_scripts, self._clients)
            ),
            return_exceptions=True,
        )

        votes = 0
        unreachable = 0
        for result in results:
            if isinstance(result, RedisError):
                unreachable += 1
                logger.debug(f"Lock node error during acquire: {result!r}")
            elif isinstance(result, BaseException):
                raise result
            elif int(result) == len(resources):
                votes += 1
        return votes, unreachable

    async def _release_all(self, resources: list[str], value: str) -> None:
        """Best-effort rollback of a failed attempt."""
        await asyncio.gather(
            *(
                script(keys=resources, args=[value], client=client)
                for script, client in zip(self._release_scripts, self._clients)
            ),
            return_exceptions=True,
        )


__all__ = ["ACQUIRE_SCRIPT", "RELEASE_SCRIPT", "Lock", "Redlock"]
