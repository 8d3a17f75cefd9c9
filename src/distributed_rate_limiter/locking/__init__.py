# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Distributed locking.

Available components:
- LockManagerProtocol / LockHandleProtocol: The contract the coordinator needs
- Redlock / Lock: Quorum lock manager over independent Redis nodes
- LockCoordinator / with_lock: Acquire, run, always release
"""

from .base import LockHandleProtocol, LockManagerProtocol
from .coordinator import LockCoordinator, with_lock
from .redlock import Lock, Redlock

__all__ = [
    "Lock",
    "LockCoordinator",
    "LockHandleProtocol",
    "LockManagerProtocol",
    "Redlock",
    "with_lock",
]
