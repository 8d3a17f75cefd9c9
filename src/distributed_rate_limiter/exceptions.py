# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the distributed rate limiter.

All exceptions inherit from RateLimiterError, making it easy to catch
every rate limiter error with a single except clause.

Two families matter to callers:

- Infrastructure errors (LockError subclasses, StateStoreError,
  BackendConnectionError). These mean "could not decide", never "denied".
- HTTP-facing errors (TooManyRequestsError, ServiceUnavailableError) that
  carry a status code for the request-handling edge.
"""


class RateLimiterError(Exception):
    """Base exception for all rate limiter errors.

    Example:
        try:
            await controller.check_token_bucket(user_id, config)
        except RateLimiterError as e:
            logger.error(f"Rate limiter error: {e}")
    """

    pass


class ConfigurationError(RateLimiterError):
    """Raised when configuration is invalid.

    Common causes include:
    - Non-positive bucket sizes, refill rates or window sizes
    - Missing required environment variables
    - Environment values that are not numbers

    Example:
        try:
            settings = Settings.from_env()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise SystemExit(1)
    """

    pass


class BackendConnectionError(RateLimiterError):
    """Raised when a Redis client cannot become ready in time."""

    pass


class StateStoreError(RateLimiterError):
    """Raised when a Redis command fails while reading or writing limiter state.

    Attributes:
        key: The Redis key being operated on when the failure happened.
    """

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class LockError(RateLimiterError):
    """Base class for distributed lock failures.

    Attributes:
        resource: The lock resource key involved in the failure.
    """

    def __init__(self, message: str, resource: str | None = None):
        super().__init__(message)
        self.resource = resource


class LockContentionError(LockError):
    """Raised when the lock is held by another owner and retries ran out.

    This is a transient condition. It is not a denial: the admission
    algorithm never ran.
    """

    pass


class LockManagerUnavailableError(LockError):
    """Raised when no lock node could be reached during acquisition."""

    pass


class LockReleaseError(LockError):
    """Raised when a held lock could not be released on enough nodes.

    The lock coordinator logs and swallows this error; the lock TTL expires
    the lock on its own.
    """

    pass


class HTTPError(RateLimiterError):
    """Base class for errors that map directly to an HTTP response.

    Attributes:
        status_code: HTTP status code for the response.
        retry_after: Optional hint in seconds for a Retry-After header.
    """

    status_code: int = 500
    default_message: str = "Unexpected error occurred, please try again later."

    def __init__(self, message: str | None = None, retry_after: float | None = None):
        super().__init__(message or self.default_message)
        self.retry_after = retry_after


class TooManyRequestsError(HTTPError):
    """The request exceeded its budget. Clients should back off."""

    status_code = 429
    default_message = "Rate limit exceeded, please try again later."


class ServiceUnavailableError(HTTPError):
    """The rate limiter could not reach a decision. Clients may retry or fail over."""

    status_code = 503
