# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Protocol definitions for the distributed lock manager.

The lock coordinator only needs two operations, so any quorum lock
implementation (or a test double) can be plugged in:

- acquire(resources, ttl_ms) -> LockHandle, raising LockContentionError when
  the resource is held elsewhere
- LockHandle.release(), raising on failure
- LockHandle.expired, true once the lock validity has run out
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class LockHandleProtocol(Protocol):
    """A held lock. Owned by a single critical section."""

    @property
    def resources(self) -> list[str]:
        """Resource keys covered by the lock."""
        ...

    @property
    def expired(self) -> bool:
        """True once the lock validity has run out."""
        ...

    async def release(self) -> None:
        """Release the lock. Raises if the release could not be confirmed."""
        ...


@runtime_checkable
class LockManagerProtocol(Protocol):
    """A distributed lock manager able to grant time-bounded exclusive ownership."""

    async def acquire(self, resources: list[str], ttl_ms: int) -> LockHandleProtocol:
        """
        Acquire exclusive ownership of resources for ttl_ms milliseconds.

        Raises:
            LockContentionError: The resource is held by another owner.
            LockManagerUnavailableError: The lock nodes could not be reached.
        """
        ...


__all__ = ["LockHandleProtocol", "LockManagerProtocol"]
