"""Bounded exponential backoff around remote calls."""

from typing import Any, Callable
import time

import core_logging as log

from . import envinfo
from .errors import (
    ReplicationError,
    TransientCloudError,
    InvalidRequestError,
    RetriesExhaustedError,
    classify_error,
)


class RetryPolicy:
    """
    Retry transient failures with exponential backoff.

    ``max_attempts`` is the total number of calls, so the defaults (6 attempts, 2 second base,
    doubling) sleep 2, 4, 8, 16 and 32 seconds between attempts before giving up.

    :param max_attempts: Total number of calls allowed, including the first
    :type max_attempts: int
    :param base_interval: Seconds to wait after the first failure
    :type base_interval: float
    :param backoff_rate: Multiplier applied to the wait after each further failure
    :type backoff_rate: float
    :param retryable: Error classes that are worth another attempt
    :type retryable: tuple[type[ReplicationError], ...]
    :param sleep: Callable used to wait.  Tests pass a recorder here.
    :type sleep: Callable[[float], None]
    """

    def __init__(
        self,
        max_attempts: int = envinfo.DEFAULT_RETRY_MAX_ATTEMPTS,
        base_interval: float = envinfo.DEFAULT_RETRY_BASE_INTERVAL_SECONDS,
        backoff_rate: float = 2.0,
        retryable: tuple[type[ReplicationError], ...] = (TransientCloudError,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_interval = base_interval
        self.backoff_rate = backoff_rate
        self.retryable = retryable
        self.sleep = sleep

    @classmethod
    def from_environment(cls, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            max_attempts=envinfo.get_retry_max_attempts(),
            base_interval=envinfo.get_retry_base_interval(),
            sleep=sleep,
        )

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1 based)."""
        return self.base_interval * (self.backoff_rate ** (attempt - 1))

    def run(
        self,
        description: str,
        fn: Callable[[], Any],
        fallback: type[ReplicationError] = InvalidRequestError,
        transient_codes: set[str] | None = None,
    ) -> Any:
        """
        Call ``fn`` until it succeeds, fails permanently or runs out of attempts.

        Exceptions that do not come from a remote call are re-raised untouched.

        :param description: Operation name used in log lines and error messages
        :type description: str
        :param fn: Zero argument callable performing the remote call
        :type fn: Callable[[], Any]
        :param fallback: Error class for non-transient service errors
        :type fallback: type[ReplicationError]
        :param transient_codes: Extra service error codes to retry for this call only
        :type transient_codes: set[str] | None
        :return: Whatever ``fn`` returns
        :raises ReplicationError: The classified error when it is not retryable
        :raises RetriesExhaustedError: When every attempt failed transiently
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as e:
                error = classify_error(e, fallback, transient_codes)
                if error is None:
                    raise

                if not isinstance(error, self.retryable):
                    log.debug("{} failed with {} ({}), not retrying", description, error.error_type, error.code)
                    if error is e:
                        raise
                    raise error from e

                if attempt >= self.max_attempts:
                    log.error("{} failed after {} attempts: {}", description, attempt, error.message)
                    raise RetriesExhaustedError(
                        f"{description} failed after {attempt} attempts: {error.message}",
                        code=error.code,
                        details={"Attempts": attempt},
                    ) from e

                delay = self.backoff(attempt)
                log.warning(
                    "{} failed with {} (attempt {} of {}), retrying in {}s",
                    description,
                    error.code or error.error_type,
                    attempt,
                    self.max_attempts,
                    delay,
                )
                self.sleep(delay)


class PollSettings:
    """Cadence and ceiling for snapshot progress checks."""

    def __init__(
        self,
        interval: float = envinfo.DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = envinfo.DEFAULT_MAX_POLL_ATTEMPTS,
    ):
        self.interval = interval
        self.max_attempts = max_attempts

    @classmethod
    def from_environment(cls) -> "PollSettings":
        return cls(interval=envinfo.get_poll_interval(), max_attempts=envinfo.get_max_poll_attempts())
