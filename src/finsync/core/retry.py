"""Exponential backoff retry for async operations.

The engine only knows whether an error is worth retrying; callers decide that
through ``should_retry`` (remote error classification by default).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import loguru
from loguru import logger

from finsync.core.errors import is_transient_error

T = TypeVar("T")

RetryObserver = Callable[[int, BaseException, float], None]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry behaviour. Delays and timeout are in seconds."""

    max_retries: int = 4
    base_delay: float = 1.0
    max_delay: float = 8.0
    timeout: float | None = None
    on_retry: RetryObserver | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            msg = "max_retries must be >= 0"
            raise ValueError(msg)
        if self.base_delay < 0 or self.max_delay < 0:
            msg = "delays must be >= 0"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class RetryOutcome(Generic[T]):
    """Terminal result of a retried operation.

    Exactly one of ``value`` (when ``succeeded``) or ``error`` is meaningful.
    """

    succeeded: bool
    attempts: int
    value: T | None = None
    error: BaseException | None = None

    @property
    def failure(self) -> BaseException:
        """The terminal error of a failed outcome."""
        if self.succeeded or self.error is None:
            msg = "outcome has no terminal error"
            raise RuntimeError(msg)
        return self.error

    def unwrap(self) -> T:
        """Return the value or raise the terminal error."""
        if self.succeeded:
            return self.value  # type: ignore[return-value]
        raise self.failure


class RetryLogger:
    """Handles all logging for the retry engine."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def retrying(
        self, attempt: int, max_retries: int, delay: float, error: BaseException
    ) -> None:
        self._logger.bind(
            attempt=attempt, max_retries=max_retries, delay=delay
        ).warning(
            "Retry attempt {}/{} after {:.2f}s delay ({})",
            attempt,
            max_retries,
            delay,
            error,
        )

    def not_retryable(self, error: BaseException) -> None:
        self._logger.bind(error_type=type(error).__name__).debug(
            "Non-retryable error, not retrying: {}", error
        )

    def exhausted(self, max_retries: int, error: BaseException) -> None:
        self._logger.bind(max_retries=max_retries).error(
            "Max retries ({}) exceeded. Giving up: {}", max_retries, error
        )


def compute_backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Return ``min(base_delay * 2 ** (attempt - 1), max_delay)``.

    ``attempt`` is the 1-based retry number, so the sequence for a 1s base
    and 8s cap is 1, 2, 4, 8, 8, ...
    """
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def _attempt(operation: Callable[[], Awaitable[T]], timeout: float | None) -> T:
    if timeout is None:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TimeoutError(f"Operation timeout after {timeout}s") from e


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    sleep: SleepFn = asyncio.sleep,
    retry_logger: RetryLogger | None = None,
) -> RetryOutcome[T]:
    """Run ``operation`` with exponential backoff.

    Attempt 1 runs immediately. A failure that ``should_retry`` rejects ends
    the loop at once; otherwise the engine sleeps for the backoff delay and
    tries again until ``max_retries`` retries have been spent.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        config: Retry configuration (defaults: 4 retries, 1s base, 8s cap)
        should_retry: Predicate deciding if a failure is worth retrying
        sleep: Awaitable sleep, injectable for tests
        retry_logger: Logger override

    Returns:
        RetryOutcome with the value or the last error and the attempt count
    """
    cfg = config or RetryConfig()
    log = retry_logger or RetryLogger()
    attempts = 0

    while True:
        attempts += 1
        try:
            value = await _attempt(operation, cfg.timeout)
        except Exception as e:  # noqa: BLE001 - outcome carries the error
            if not should_retry(e):
                log.not_retryable(e)
                return RetryOutcome(succeeded=False, attempts=attempts, error=e)

            retry_number = attempts
            if retry_number > cfg.max_retries:
                log.exhausted(cfg.max_retries, e)
                return RetryOutcome(succeeded=False, attempts=attempts, error=e)

            delay = compute_backoff_delay(retry_number, cfg.base_delay, cfg.max_delay)
            if cfg.on_retry is not None:
                cfg.on_retry(retry_number, e, delay)
            log.retrying(retry_number, cfg.max_retries, delay, e)
            await sleep(delay)
            continue

        return RetryOutcome(succeeded=True, attempts=attempts, value=value)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run ``operation`` with retries and return its value or raise."""
    outcome = await run_with_retry(
        operation, config, should_retry=should_retry, sleep=sleep
    )
    return outcome.unwrap()
