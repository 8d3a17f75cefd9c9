# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Configuration for the distributed rate limiter.

This module provides:
- TokenBucketConfig: Per-limiter settings for request-rate limiting
- TokenUsageConfig: Per-limiter settings for windowed token budgets
- Settings: Process-level settings (Redis, lock manager, key prefix) read
  from environment variables
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .exceptions import ConfigurationError

DEFAULT_KEY_PREFIX = "rate-limiter:v1"
"""Shared, versionable prefix for every key the limiter writes."""


@dataclass(frozen=True)
class TokenBucketConfig:
    """
    Configuration for a continuous-refill token bucket limiter.

    One bucket exists per (service_name, limiter_name, user_id) triple.
    """

    service_name: str
    """Name of the service owning the limiter."""

    limiter_name: str
    """Name of the limiter within the service."""

    bucket_size: int
    """Maximum number of tokens the bucket holds."""

    refill_rate: float
    """Tokens added per second."""

    bucket_ttl_seconds: int
    """Idle time after which the bucket state expires and resets to full."""

    lock_ttl_ms: int
    """Validity of the per-user lock guarding the bucket."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        _require_name("service_name", self.service_name)
        _require_name("limiter_name", self.limiter_name)
        if self.bucket_size < 1:
            raise ConfigurationError("bucket_size must be at least 1")
        if self.refill_rate <= 0:
            raise ConfigurationError("refill_rate must be positive")
        if self.bucket_ttl_seconds < 1:
            raise ConfigurationError("bucket_ttl_seconds must be at least 1")
        if self.lock_ttl_ms < 1:
            raise ConfigurationError("lock_ttl_ms must be at least 1")


@dataclass(frozen=True)
class TokenUsageConfig:
    """
    Configuration for a fixed-window token usage limiter.

    Windows are aligned to multiples of window_size_seconds since the epoch,
    so every instance computes the same window boundaries.
    """

    service_name: str
    limiter_name: str

    window_tokens_limit: int
    """Maximum tokens that may be consumed within one window."""

    window_size_seconds: int
    """Length of a window in seconds."""

    estimated_tokens: int
    """Tokens reserved up front for each admitted request."""

    lock_ttl_ms: int

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        _require_name("service_name", self.service_name)
        _require_name("limiter_name", self.limiter_name)
        if self.window_tokens_limit < 1:
            raise ConfigurationError("window_tokens_limit must be at least 1")
        if self.window_size_seconds < 1:
            raise ConfigurationError("window_size_seconds must be at least 1")
        if self.estimated_tokens < 0:
            raise ConfigurationError("estimated_tokens must not be negative")
        if self.lock_ttl_ms < 1:
            raise ConfigurationError("lock_ttl_ms must be at least 1")

    @property
    def window_size_ms(self) -> int:
        return self.window_size_seconds * 1000


@dataclass
class Settings:
    """
    Process-level settings shared by every limiter in a service.

    Construct once at process start (usually with from_env) and pass to
    AdmissionController.from_settings.
    """

    redis_url: str
    """Redis instance holding limiter state."""

    lock_redis_urls: list[str] = field(default_factory=list)
    """Independent Redis nodes used for the lock quorum. Empty means redis_url."""

    redis_connect_timeout_ms: int = 5000
    """Timeout for the TCP connect and for the initial readiness ping."""

    redlock_retry_count: int = 10
    """Extra acquisition attempts after the first one fails."""

    redlock_retry_delay_ms: int = 200
    """Base delay between acquisition attempts."""

    redlock_retry_jitter_ms: int = 200
    """Upper bound of the random jitter added to each retry delay."""

    key_prefix: str = DEFAULT_KEY_PREFIX

    global_token_bucket: dict[str, float] | None = None
    """Raw GLOBAL_TOKEN_BUCKET_RATE_LIMITER_* values, when present."""

    global_token_bucket_name: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.redis_url:
            raise ConfigurationError("redis_url must not be empty")
        if not self.lock_redis_urls:
            self.lock_redis_urls = [self.redis_url]
        if self.redis_connect_timeout_ms < 1:
            raise ConfigurationError("redis_connect_timeout_ms must be at least 1")
        if self.redlock_retry_count < 0:
            raise ConfigurationError("redlock_retry_count must not be negative")
        if self.redlock_retry_delay_ms < 0 or self.redlock_retry_jitter_ms < 0:
            raise ConfigurationError("redlock retry delay and jitter must not be negative")
        if not self.key_prefix:
            raise ConfigurationError("key_prefix must not be empty")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Environment Variables:
            REDIS_URL: Required. Redis connection URL for limiter state.
            REDIS_LOCK_URLS: Comma-separated lock node URLs (default: REDIS_URL).
            REDIS_CONNECT_TIMEOUT_MS: Connect/ready timeout (default 5000).
            REDLOCK_RETRY_COUNT, REDLOCK_RETRY_DELAY_MS, REDLOCK_RETRY_JITTER_MS:
                Lock acquisition retry policy.
            RATE_LIMITER_KEY_PREFIX: Key prefix (default "rate-limiter:v1").
            GLOBAL_TOKEN_BUCKET_RATE_LIMITER_NAME and the matching
                _BUCKET_SIZE, _REFILL_RATE, _BUCKET_TTL_SECONDS, _LOCK_TTL_MS:
                Optional service-wide token bucket (all five or none).

        Raises:
            ConfigurationError: If a required variable is missing or a numeric
                variable cannot be parsed.
        """
        env = os.environ if environ is None else environ

        redis_url = env.get("REDIS_URL")
        if not redis_url:
            raise ConfigurationError("REDIS_URL environment variable is required")

        lock_urls = [
            url.strip() for url in env.get("REDIS_LOCK_URLS", "").split(",") if url.strip()
        ]

        global_name = env.get("GLOBAL_TOKEN_BUCKET_RATE_LIMITER_NAME")
        global_bucket: dict[str, float] | None = None
        if global_name:
            global_bucket = {
                suffix.lower(): _required_number(
                    env, f"GLOBAL_TOKEN_BUCKET_RATE_LIMITER_{suffix}"
                )
                for suffix in (
                    "BUCKET_SIZE",
                    "REFILL_RATE",
                    "BUCKET_TTL_SECONDS",
                    "LOCK_TTL_MS",
                )
            }

        return cls(
            redis_url=redis_url,
            lock_redis_urls=lock_urls,
            redis_connect_timeout_ms=int(
                _optional_number(env, "REDIS_CONNECT_TIMEOUT_MS", 5000)
            ),
            redlock_retry_count=int(_optional_number(env, "REDLOCK_RETRY_COUNT", 10)),
            redlock_retry_delay_ms=int(
                _optional_number(env, "REDLOCK_RETRY_DELAY_MS", 200)
            ),
            redlock_retry_jitter_ms=int(
                _optional_number(env, "REDLOCK_RETRY_JITTER_MS", 200)
            ),
            key_prefix=env.get("RATE_LIMITER_KEY_PREFIX") or DEFAULT_KEY_PREFIX,
            global_token_bucket=global_bucket,
            global_token_bucket_name=global_name,
        )

    def global_token_bucket_config(self, service_name: str) -> TokenBucketConfig | None:
        """Return the service-wide bucket config, or None if not configured."""
        if not self.global_token_bucket or not self.global_token_bucket_name:
            return None
        values = self.global_token_bucket
        return TokenBucketConfig(
            service_name=service_name,
            limiter_name=self.global_token_bucket_name,
            bucket_size=int(values["bucket_size"]),
            refill_rate=values["refill_rate"],
            bucket_ttl_seconds=int(values["bucket_ttl_seconds"]),
            lock_ttl_ms=int(values["lock_ttl_ms"]),
        )


def _require_name(field_name: str, value: str) -> None:
    if not value:
        raise ConfigurationError(f"{field_name} must not be empty")
    if ":" in value:
        # ':' is the key separator
        raise ConfigurationError(f"{field_name} must not contain ':', got {value!r}")


def _parse_number(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _required_number(env: Mapping[str, str], name: str) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        raise ConfigurationError(f"{name} environment variable is required")
    return _parse_number(name, raw)


def _optional_number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return _parse_number(name, raw)
