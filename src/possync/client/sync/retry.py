"""Retry policy with exponential backoff and error classification.

This module provides:
- next_delay: Pure exponential backoff with jitter
- RetryPolicy: Backoff settings plus the dead-letter ceiling
- ErrorKind, classify_error, classify_status: Map failures to handling
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from possync.client.api import (
    RETRIABLE_STATUS_CODES,
    APIError,
    AuthenticationError,
    ConflictError,
    ServerError,
)
from possync.client.sync.types import CorruptRecordError

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 300.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.2

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)


def next_delay(
    attempt_count: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    jitter: float = DEFAULT_JITTER,
    rng: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before the next attempt.

    The delay grows as base_delay * multiplier ** (attempt_count - 1),
    is capped at max_delay, then scaled by a random factor in
    [1 - jitter, 1 + jitter] so records that failed together do not
    retry together. The result never exceeds max_delay.

    Args:
        attempt_count: Failed attempts so far (1 after the first failure).
        base_delay: Delay after the first failure, in seconds.
        max_delay: Upper bound, in seconds.
        multiplier: Growth factor per attempt.
        jitter: Fraction of the delay to randomize (0 = deterministic).
        rng: Source of uniform floats in [0, 1).

    Returns:
        Delay in seconds.
    """
    exponent = min(max(attempt_count - 1, 0), 64)  # avoid float overflow
    delay = min(base_delay * multiplier**exponent, max_delay)
    if jitter > 0:
        delay *= 1.0 - jitter + 2.0 * jitter * rng()
    return max(0.0, min(delay, max_delay))


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings and dead-letter ceiling for queued records.

    Attributes:
        base_delay: First retry delay in seconds.
        max_delay: Upper bound for any delay in seconds.
        multiplier: Growth factor per attempt.
        jitter: Fraction of the delay randomized in both directions.
        max_attempts: Failed attempts after which a record is dead-lettered.
    """

    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_JITTER
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def next_delay(
        self,
        attempt_count: int,
        rng: Callable[[], float] = random.random,
    ) -> float:
        """Delay before the attempt following `attempt_count` failures."""
        return next_delay(
            attempt_count,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
            rng=rng,
        )

    def is_exhausted(self, attempt_count: int) -> bool:
        """Check if a record with this many failures must be dead-lettered."""
        return attempt_count >= self.max_attempts


class ErrorKind(Enum):
    """How the orchestrator handles a failure."""

    NETWORK = "network"  # no response: check connectivity, retry later
    TRANSIENT = "transient"  # server answered but may succeed later
    CONFLICT = "conflict"  # stale local view: pull, then retry
    REJECTED = "rejected"  # validation failure: dead-letter now
    AUTH = "auth"  # credentials refused: stop the pass
    CORRUPT = "corrupt"  # local record unreadable: dead-letter now


def classify_status(code: int | None) -> ErrorKind:
    """Classify a per-record rejection by its status code.

    Args:
        code: HTTP-style status code reported for the record.

    Returns:
        ErrorKind; a missing code counts as a validation rejection.
    """
    if code is None:
        return ErrorKind.REJECTED
    if code in (401, 403):
        return ErrorKind.AUTH
    if code == 409:
        return ErrorKind.CONFLICT
    if code >= 500 or code in RETRIABLE_STATUS_CODES:
        return ErrorKind.TRANSIENT
    return ErrorKind.REJECTED


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an exception raised while pushing.

    Args:
        error: The exception.

    Returns:
        ErrorKind describing how to handle it.
    """
    if isinstance(error, CorruptRecordError):
        return ErrorKind.CORRUPT
    if isinstance(error, AuthenticationError):
        return ErrorKind.AUTH
    if isinstance(error, ConflictError):
        return ErrorKind.CONFLICT
    if isinstance(error, ServerError):
        return ErrorKind.TRANSIENT
    if isinstance(error, NETWORK_EXCEPTIONS):
        return ErrorKind.NETWORK
    if isinstance(error, APIError):
        return classify_status(error.status_code)
    logger.debug("Unclassified error treated as transient: %r", error)
    return ErrorKind.TRANSIENT
