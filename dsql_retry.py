"""
Retry wrapper for DSQL database operations.

Aurora DSQL uses optimistic concurrency control: conflicting transactions
fail at commit time with a serialization error and are expected to be
retried by the client. Every database call in this project goes through
RetryPolicy.call so the retry rules live in one place.
"""

import enum
import logging
import random
import time
from typing import Any, Callable, Optional

import psycopg2.errors

logger = logging.getLogger(__name__)

# 40001 is the standard serialization_failure SQLSTATE; OC000 (data conflict)
# and OC001 (schema changed) are DSQL's optimistic concurrency failures.
TRANSIENT_SQLSTATES = frozenset({'40001', 'OC000', 'OC001'})


class ErrorKind(str, enum.Enum):
    TRANSIENT = 'transient'
    FATAL = 'fatal'


def is_transient_error(exc: BaseException) -> bool:
    """Return True if the error is a serialization/contention failure worth retrying."""
    if isinstance(exc, psycopg2.errors.SerializationFailure):
        return True
    return getattr(exc, 'pgcode', None) in TRANSIENT_SQLSTATES


def classify_error(exc: BaseException,
                   is_transient: Callable[[BaseException], bool] = is_transient_error) -> ErrorKind:
    return ErrorKind.TRANSIENT if is_transient(exc) else ErrorKind.FATAL


class RetryPolicy:
    """
    Retry an operation on transient errors.

    Args:
        max_attempts: Total number of attempts, including the first one
        backoff_seconds: Fixed delay between attempts
        jitter_seconds: Upper bound of a random delay added to the backoff
        is_transient: Predicate deciding whether an error is retryable
        sleep: Function used to wait between attempts
    """

    def __init__(self, max_attempts: int = 3, backoff_seconds: float = 0.5,
                 jitter_seconds: float = 0.0,
                 is_transient: Callable[[BaseException], bool] = is_transient_error,
                 sleep: Callable[[float], Any] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_seconds < 0 or jitter_seconds < 0:
            raise ValueError("backoff and jitter must not be negative")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.jitter_seconds = jitter_seconds
        self.is_transient = is_transient
        self.sleep = sleep
        self._random = random.SystemRandom()

    @classmethod
    def from_config(cls, stress_config: dict, **kwargs) -> 'RetryPolicy':
        """Build a policy from the 'stress' section of CONFIG."""
        return cls(
            max_attempts=stress_config['max_attempts'],
            backoff_seconds=stress_config['backoff_ms'] / 1000.0,
            jitter_seconds=stress_config['jitter_ms'] / 1000.0,
            **kwargs
        )

    def classify(self, exc: BaseException) -> ErrorKind:
        return classify_error(exc, self.is_transient)

    def backoff_delay(self) -> float:
        if self.jitter_seconds:
            return self.backoff_seconds + self._random.uniform(0, self.jitter_seconds)
        return self.backoff_seconds

    def call(self, operation: Callable[..., Any], *args, description: Optional[str] = None,
             **kwargs) -> Any:
        """
        Run operation(*args, **kwargs), retrying transient failures.

        Fatal errors are re-raised immediately. A transient error on the last
        allowed attempt is re-raised as-is.

        Returns:
            Whatever the operation returns on its first successful attempt
        """
        what = description or getattr(operation, '__name__', 'operation')
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation(*args, **kwargs)
            except Exception as e:
                if not self.is_transient(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(f"[RETRY] {what} failed after {attempt}/{self.max_attempts} attempts: {e}")
                    raise
                delay = self.backoff_delay()
                logger.info(f"[RETRY] {what} hit a transient error (attempt {attempt}/{self.max_attempts}), "
                            f"retrying in {delay:.2f}s: {e}")
                self.sleep(delay)
