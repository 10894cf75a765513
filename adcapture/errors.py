"""Error taxonomy, classification heuristics and retry helpers for capture jobs."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_TIMEOUT_KEYWORDS = ("timeout", "timed out", "deadline exceeded")
_NETWORK_KEYWORDS = (
    "network",
    "connection",
    "econnreset",
    "enotfound",
    "econnrefused",
    "socket",
    "dns",
    "fetch",
    "request failed",
    "net::err",
)
_BROWSER_KEYWORDS = ("browser", "target closed", "page", "crash")
_SELECTOR_KEYWORDS = ("selector", "element not found", "waiting for selector")
_UPLOAD_KEYWORDS = ("upload", "drive", "storage")
_PARSING_KEYWORDS = ("parse", "json", "csv")
_AUTH_KEYWORDS = ("auth", "permission", "unauthorized", "forbidden")
_USER_ERROR_KEYWORDS = ("validation", "invalid", "bad request", "unauthorized", "forbidden", "conflict")

_TIMEOUT_TYPES = (asyncio.TimeoutError, TimeoutError, PlaywrightTimeoutError)

DEFAULT_MAX_ATTEMPTS = 3


class ErrorType(str, Enum):
    """Closed set of failure classes a capture attempt can end with."""

    NETWORK_ERROR = "NETWORK_ERROR"
    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"
    BROWSER_CRASH = "BROWSER_CRASH"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    UPLOAD_ERROR = "UPLOAD_ERROR"
    PARSING_ERROR = "PARSING_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"


_NON_RETRYABLE = frozenset({ErrorType.PARSING_ERROR, ErrorType.AUTHENTICATION_ERROR})


class CaptureError(Exception):
    """Base error carrying an explicit classification and log context."""

    error_type: ErrorType = ErrorType.NETWORK_ERROR

    def __init__(
        self,
        message: str,
        error_type: ErrorType | None = None,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.context = dict(context or {})


class NavigationError(CaptureError):
    error_type = ErrorType.NETWORK_ERROR


class SelectorNotFoundError(CaptureError):
    error_type = ErrorType.SELECTOR_NOT_FOUND


class BrowserCrashError(CaptureError):
    error_type = ErrorType.BROWSER_CRASH


class ScriptTimeoutError(CaptureError):
    error_type = ErrorType.TIMEOUT_ERROR


class DirectiveParseError(CaptureError):
    error_type = ErrorType.PARSING_ERROR


class CircuitOpenError(CaptureError):
    """Raised when a call is attempted while its circuit breaker is open."""

    error_type = ErrorType.NETWORK_ERROR


class StalledJobError(CaptureError):
    """Raised for an active job whose worker never acked or nacked it."""

    error_type = ErrorType.TIMEOUT_ERROR


class BatchTimeoutError(CaptureError):
    """Raised when a batch is not fully accounted for before its deadline."""

    error_type = ErrorType.TIMEOUT_ERROR

    def __init__(self, message: str, *, partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


def classify(error: BaseException) -> ErrorType:
    """Map an exception onto the capture error taxonomy.

    Typed errors win, then timeout types, then keyword heuristics on the
    message in the order network, timeout, browser, selector, upload,
    parsing, auth. Unknown errors default to ``NETWORK_ERROR`` since they
    are usually transient.
    """

    if isinstance(error, CaptureError):
        return error.error_type
    if isinstance(error, _TIMEOUT_TYPES):
        return ErrorType.TIMEOUT_ERROR

    message = str(error).lower()
    if _matches(message, _NETWORK_KEYWORDS):
        return ErrorType.NETWORK_ERROR
    if _matches(message, _TIMEOUT_KEYWORDS):
        return ErrorType.TIMEOUT_ERROR
    if _matches(message, _BROWSER_KEYWORDS):
        return ErrorType.BROWSER_CRASH
    if _matches(message, _SELECTOR_KEYWORDS):
        return ErrorType.SELECTOR_NOT_FOUND
    if _matches(message, _UPLOAD_KEYWORDS):
        return ErrorType.UPLOAD_ERROR
    if _matches(message, _PARSING_KEYWORDS):
        return ErrorType.PARSING_ERROR
    if _matches(message, _AUTH_KEYWORDS):
        return ErrorType.AUTHENTICATION_ERROR
    return ErrorType.NETWORK_ERROR


def is_user_error(error: BaseException) -> bool:
    """Return True for validation-style failures that retrying cannot fix.

    Typed errors are judged by their class alone; their messages embed URLs
    and selectors, so the keyword check only applies to untyped errors that
    do not look like a network or timeout failure.
    """

    error_type = classify(error)
    if error_type in _NON_RETRYABLE:
        return True
    if isinstance(error, CaptureError) or _is_transient(error):
        return False
    message = str(error).lower()
    if _matches(message, _USER_ERROR_KEYWORDS):
        return True
    # "element not found" is a selector miss, not a missing resource
    return "not found" in message and error_type is not ErrorType.SELECTOR_NOT_FOUND


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, _TIMEOUT_TYPES):
        return True
    message = str(error).lower()
    return _matches(message, _NETWORK_KEYWORDS) or _matches(message, _TIMEOUT_KEYWORDS)


def is_retryable(error: BaseException) -> bool:
    return not is_user_error(error)


def should_retry(error: BaseException, attempt: int, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> bool:
    """Decide whether a job that failed on ``attempt`` (1-based) gets another try."""

    if attempt >= max_attempts:
        return False
    return is_retryable(error)


def describe_error(error: BaseException) -> dict[str, Any]:
    """Return a JSON-friendly summary for logs and batch results."""

    return {
        "message": str(error) or error.__class__.__name__,
        "type": classify(error).value,
        "retryable": is_retryable(error),
    }


def _matches(message: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in message for keyword in keywords)


@dataclass(frozen=True, slots=True)
class RetryStrategy:
    """Exponential backoff envelope for :func:`with_retry`."""

    max_attempts: int = 3
    delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 10000
    linear: bool = False

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep after failed ``attempt`` (1-based)."""

        if self.linear:
            delay = self.delay_ms * max(1, attempt)
        else:
            delay = self.delay_ms * self.backoff_multiplier ** max(0, attempt - 1)
        return min(delay, self.max_delay_ms) / 1000.0


RETRY_STRATEGIES: dict[ErrorType, RetryStrategy] = {
    ErrorType.NETWORK_ERROR: RetryStrategy(max_attempts=5, delay_ms=1000, backoff_multiplier=2, max_delay_ms=10000),
    ErrorType.SELECTOR_NOT_FOUND: RetryStrategy(max_attempts=3, delay_ms=2000, backoff_multiplier=1.5, max_delay_ms=8000),
    ErrorType.BROWSER_CRASH: RetryStrategy(max_attempts=2, delay_ms=5000, backoff_multiplier=1, max_delay_ms=5000),
    ErrorType.UPLOAD_ERROR: RetryStrategy(max_attempts=4, delay_ms=1500, backoff_multiplier=2, max_delay_ms=12000),
}


def strategy_for(error_type: ErrorType) -> RetryStrategy:
    return RETRY_STRATEGIES.get(error_type, RetryStrategy())


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    strategy: RetryStrategy | None = None,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the strategy's attempts are spent.

    User/validation errors are re-raised immediately; the last error is
    re-raised once attempts run out.
    """

    active = strategy or RetryStrategy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt >= active.max_attempts or is_user_error(exc):
                raise
            delay = active.delay_for(attempt)
            LOGGER.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                label,
                attempt,
                active.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stop calling a chronically failing dependency for a cool-down period.

    Opens after ``failure_threshold`` failures inside ``monitoring_period_s``,
    allows one trial call after ``recovery_timeout_s`` and closes again on the
    next success.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        monitoring_period_s: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self.monitoring_period_s = monitoring_period_s
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self._window_started: float | None = None
        self._opened_at: float | None = None

    def can_execute(self) -> bool:
        if self.state is CircuitState.OPEN:
            now = self._clock()
            if self._opened_at is None:
                self._opened_at = now
            if now - self._opened_at >= self.recovery_timeout_s:
                self.state = CircuitState.HALF_OPEN
                LOGGER.info("Circuit %s half-open, allowing a trial call", self.name)
                return True
            return False
        return True

    def record_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            LOGGER.info("Circuit %s closed after successful call", self.name)
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self._window_started = None
        self._opened_at = None

    def record_failure(self) -> None:
        now = self._clock()
        if self.state is CircuitState.HALF_OPEN:
            self._open(now)
            return
        if self._window_started is None or now - self._window_started > self.monitoring_period_s:
            self._window_started = now
            self.failure_count = 0
        self.failure_count += 1
        if self.failure_count >= self.failure_threshold:
            self._open(now)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        if not self.can_execute():
            raise CircuitOpenError(f"Circuit breaker {self.name} is open")
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def snapshot(self) -> dict[str, Any]:
        return {"name": self.name, "state": self.state.value, "failures": self.failure_count}

    def _open(self, now: float) -> None:
        self.state = CircuitState.OPEN
        self._opened_at = now
        LOGGER.warning(
            "Circuit %s opened after %s failures", self.name, self.failure_count
        )
