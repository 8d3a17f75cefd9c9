# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Deterministic Redis key names for limiter state and locks.

Every instance must derive the same key for the same logical resource, so
these functions depend on their arguments only.

Bucket and usage state for one (service, limiter, user) triple live in two
separate hashes, each with its own lock:

    <prefix>:bucket:<service>:<limiter>:<user>       tokens, last
    <prefix>:usage:<service>:<limiter>:<user>        tokensUsed, windowStartTimestamp
"""

from dataclasses import dataclass

from .config import DEFAULT_KEY_PREFIX

LOCK_SUFFIX = "lock"

BUCKET_KIND = "bucket"
USAGE_KIND = "usage"


def state_key(prefix: str, service_name: str, limiter_name: str, user_id: str | int) -> str:
    """Get Redis key for a limiter's per-user state hash."""
    return f"{prefix}:{service_name}:{limiter_name}:{user_id}"


def lock_key(prefix: str, service_name: str, limiter_name: str, user_id: str | int) -> str:
    """Get the lock resource name guarding the matching state key."""
    return f"{state_key(prefix, service_name, limiter_name, user_id)}:{LOCK_SUFFIX}"


@dataclass(frozen=True)
class KeyBuilder:
    """Binds a key prefix so call sites only pass the limiter triple."""

    prefix: str = DEFAULT_KEY_PREFIX

    def state_key(self, service_name: str, limiter_name: str, user_id: str | int) -> str:
        return state_key(self.prefix, service_name, limiter_name, user_id)

    def lock_key(self, service_name: str, limiter_name: str, user_id: str | int) -> str:
        return lock_key(self.prefix, service_name, limiter_name, user_id)

    def bucket_state_key(
        self, service_name: str, limiter_name: str, user_id: str | int
    ) -> str:
        return state_key(self._kind_prefix(BUCKET_KIND), service_name, limiter_name, user_id)

    def bucket_lock_key(
        self, service_name: str, limiter_name: str, user_id: str | int
    ) -> str:
        return lock_key(self._kind_prefix(BUCKET_KIND), service_name, limiter_name, user_id)

    def usage_state_key(
        self, service_name: str, limiter_name: str, user_id: str | int
    ) -> str:
        return state_key(self._kind_prefix(USAGE_KIND), service_name, limiter_name, user_id)

    def usage_lock_key(
        self, service_name: str, limiter_name: str, user_id: str | int
    ) -> str:
        return lock_key(self._kind_prefix(USAGE_KIND), service_name, limiter_name, user_id)

    def _kind_prefix(self, kind: str) -> str:
        return f"{self.prefix}:{kind}"


__all__ = [
    "BUCKET_KIND",
    "LOCK_SUFFIX",
    "USAGE_KIND",
    "KeyBuilder",
    "lock_key",
    "state_key",
]
