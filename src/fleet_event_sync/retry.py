# fleet_event_sync/retry.py
"""
Bounded retry execution for outbound provider calls.

Retry Behavior:
---------------
- Rate limits (429, RateLimitError): wait the provider's Retry-After hint plus
  a 0.5s buffer. Rate-limited attempts are tallied separately and left out of
  the failure count reported when attempts run out, but they still use up
  max_attempts: a provider answering 429 every time exhausts the budget and
  the last RateLimitError is raised.
- Server errors, timeouts, connection errors (TransientAPIError): exponential
  backoff, `min(backoff_factor * 2 ** (attempt - 1), max_backoff_seconds)`.
- Anything else, including 4xx other than 429 (plain APIError): raised on the
  first occurrence, no retry.

Calls slower than the configured threshold are logged at WARNING but their
result is returned normally.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from fleet_event_sync.client import RateLimitError, TransientAPIError
from fleet_event_sync.config import ProviderConfig

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = ['CallResult', 'RetryExecutor', 'RetryPolicy']

DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BACKOFF_FACTOR: Final[float] = 1.0
DEFAULT_MAX_BACKOFF_SECONDS: Final[float] = 30.0
DEFAULT_SLOW_CALL_THRESHOLD_SECONDS: Final[float] = 10.0


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Tunables for RetryExecutor, normally taken from ProviderConfig."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS
    slow_call_threshold_seconds: float = DEFAULT_SLOW_CALL_THRESHOLD_SECONDS

    @classmethod
    def from_provider_config(cls, provider_config: ProviderConfig) -> 'RetryPolicy':
        return cls(
            max_attempts=provider_config.max_attempts,
            backoff_factor=provider_config.retry_backoff_factor,
            max_backoff_seconds=provider_config.max_backoff_seconds,
            slow_call_threshold_seconds=provider_config.slow_call_threshold_seconds,
        )

    def backoff_seconds(self, attempt_number: int) -> float:
        """Exponential delay after the given (1-based) failed attempt."""
        exponential_wait: float = self.backoff_factor * (2 ** (attempt_number - 1))
        return min(exponential_wait, self.max_backoff_seconds)


@dataclass(frozen=True, slots=True)
class CallResult[T]:
    """
    Outcome of a successful RetryExecutor.run call.

    Attributes:
        value: Whatever the operation returned.
        attempts: Total attempts made, including the successful one.
        rate_limited_attempts: How many of those attempts ended in a 429.
        elapsed_seconds: Wall time across all attempts and waits.
    """

    value: T
    attempts: int
    rate_limited_attempts: int
    elapsed_seconds: float


class RetryExecutor:
    """
    Runs one outbound call under the retry policy.

    The executor is stateless between calls; a fresh tenacity controller is
    built per run() so counters never leak across operations.

    Every attempt counts toward policy.max_attempts, 429s included. Callers
    that expect long rate-limit streaks should raise max_attempts rather than
    rely on Retry-After waits being free.

    Example:
        >>> executor = RetryExecutor(RetryPolicy(max_attempts=3))
        >>> result = executor.run(lambda: client.execute(spec), label='drivers')
        >>> result.attempts
        1
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy: RetryPolicy = policy or RetryPolicy()
        self._sleep: Callable[[float], None] = sleep
        self._clock: Callable[[], float] = clock

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _compute_wait(self, retry_state: RetryCallState) -> float:
        """Retry-After for rate limits, exponential backoff for the rest."""
        exception: BaseException | None = (
            retry_state.outcome.exception() if retry_state.outcome else None
        )

        if isinstance(exception, RateLimitError):
            return exception.rate_limit_info.wait_seconds

        return self._policy.backoff_seconds(retry_state.attempt_number)

    def run[T](self, operation: Callable[[], T], label: str = 'call') -> CallResult[T]:
        """
        Execute operation, retrying transient failures.

        Args:
            operation: Zero-argument callable performing one attempt.
            label: Short description used in log lines.

        Returns:
            CallResult wrapping the operation's return value.

        Raises:
            APIError: Non-retryable failure, raised on first occurrence.
            TransientAPIError: Last transient failure once attempts run out.
        """
        attempts: int = 0
        rate_limited_attempts: int = 0
        started_at: float = self._clock()

        def log_before_sleep(retry_state: RetryCallState) -> None:
            wait_seconds: float = (
                retry_state.next_action.sleep if retry_state.next_action else 0.0
            )
            exception: BaseException | None = (
                retry_state.outcome.exception() if retry_state.outcome else None
            )
            logger.warning(
                '%s attempt %d/%d failed (%s), retrying in %.1fs',
                label,
                retry_state.attempt_number,
                self._policy.max_attempts,
                exception,
                wait_seconds,
            )

        retrying = Retrying(
            retry=retry_if_exception_type(TransientAPIError),
            wait=self._compute_wait,
            stop=stop_after_attempt(self._policy.max_attempts),
            sleep=self._sleep,
            before_sleep=log_before_sleep,
            reraise=True,
        )

        try:
            for attempt in retrying:
                with attempt:
                    attempts += 1
                    try:
                        value: T = operation()
                    except RateLimitError:
                        rate_limited_attempts += 1
                        raise
        except TransientAPIError as error:
            failed_attempts: int = attempts - rate_limited_attempts
            logger.error(
                '%s gave up after %d attempts (%d failed, %d rate limited): %s',
                label,
                attempts,
                failed_attempts,
                rate_limited_attempts,
                error,
            )
            raise

        elapsed_seconds: float = self._clock() - started_at

        if elapsed_seconds > self._policy.slow_call_threshold_seconds:
            logger.warning(
                'Slow call: %s took %.1fs over %d attempt(s)',
                label,
                elapsed_seconds,
                attempts,
            )
        else:
            logger.debug('%s succeeded in %.2fs', label, elapsed_seconds)

        return CallResult(
            value=value,
            attempts=attempts,
            rate_limited_attempts=rate_limited_attempts,
            elapsed_seconds=elapsed_seconds,
        )
