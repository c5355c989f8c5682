"""
Bounded exponential back-off with jitter for market data calls.
Separates transient failures (timeouts, 5xx, rate limits) from
permanent ones (bad credentials, malformed requests).
"""
import random
import time
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import requests
from loguru import logger


T = TypeVar('T')

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
NON_RETRYABLE_STATUS_CODES = {400, 401, 403, 404, 405, 422}
RATE_LIMIT_PHRASES = ('rate limit', 'too many requests', '429')
CREDENTIAL_PHRASES = ('unauthorized', 'forbidden', 'invalid credentials', 'access key', 'not authorized')


class FetchError(Exception):
    """Base class for market data failures."""
    pass


class RetryableFetchError(FetchError):
    """Transient failure worth retrying (timeout, 5xx, rate limit, empty result)."""
    pass


class NonRetryableFetchError(FetchError):
    """Permanent failure; retrying cannot help."""
    pass


def _status_code_of(error: Exception) -> Optional[int]:
    status = getattr(error, 'status_code', None)
    if status is None:
        response = getattr(error, 'response', None)
        status = getattr(response, 'status_code', None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_retryable(error: Exception) -> bool:
    """
    Classify an exception as retryable or not.

    Args:
        error: Exception raised by the wrapped call

    Returns:
        True if the call should be retried
    """
    if isinstance(error, NonRetryableFetchError):
        return False
    if isinstance(error, RetryableFetchError):
        return True
    if isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        return True

    status = _status_code_of(error)
    if status is not None:
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            return True
        if status in NON_RETRYABLE_STATUS_CODES:
            return False

    message = str(error).lower()
    if any(phrase in message for phrase in RATE_LIMIT_PHRASES):
        return True
    if any(phrase in message for phrase in CREDENTIAL_PHRASES):
        return False
    if isinstance(error, (ValueError, TypeError)):
        return False

    # Unknown failures are assumed transient
    return True


class FetchResult(Generic[T]):
    """
    Outcome of a retried call: data on success, otherwise the last error.
    """

    def __init__(self, data: Optional[T] = None, error: Optional[str] = None, attempts: int = 0,
                 retryable: bool = True):
        self.data = data
        self.error = error
        self.attempts = attempts
        self.retryable = retryable

    @property
    def ok(self) -> bool:
        return self.error is None and self.data is not None

    def __repr__(self) -> str:
        return f"FetchResult(ok={self.ok}, attempts={self.attempts}, error={self.error!r})"


class RetryingFetcher:
    """
    Calls a data function with bounded exponential back-off.

    Delay before retry n (0-based) is base_delay * 2**n * jitter with
    jitter drawn uniformly from [jitter_min, jitter_max].
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        jitter_min: float = 0.5,
        jitter_max: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize fetcher.

        Args:
            max_retries: Additional attempts after the first call
            base_delay: Base back-off delay in seconds
            jitter_min: Lower bound of the jitter multiplier
            jitter_max: Upper bound of the jitter multiplier
            sleep: Sleep function (injected in tests)
            rng: Random source for jitter
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.jitter_min = jitter_min
        self.jitter_max = jitter_max
        self.sleep = sleep
        self.rng = rng or random.Random()

        # Stats
        self.total_calls = 0
        self.total_retries = 0

    @classmethod
    def from_config(cls, config: Dict, **kwargs) -> "RetryingFetcher":
        retry_config = config.get('retry', {}) or {}
        return cls(
            max_retries=int(retry_config.get('max_retries', 3)),
            base_delay=float(retry_config.get('base_delay_seconds', 2.0)),
            jitter_min=float(retry_config.get('jitter_min', 0.5)),
            jitter_max=float(retry_config.get('jitter_max', 1.5)),
            **kwargs
        )

    def backoff_delay(self, attempt: int) -> float:
        """
        Compute the delay before the given retry.

        Args:
            attempt: 0-based retry number

        Returns:
            Delay in seconds
        """
        jitter = self.rng.uniform(self.jitter_min, self.jitter_max)
        return self.base_delay * (2 ** attempt) * jitter

    def fetch_with_retry(
        self,
        fn: Callable[[], Optional[T]],
        max_retries: Optional[int] = None,
        description: str = "fetch"
    ) -> FetchResult[T]:
        """
        Call fn, retrying on failure or empty results.

        Never raises: exhaustion and permanent failures are returned as a
        FetchResult carrying the last error.

        Args:
            fn: Zero-argument callable returning data or None
            max_retries: Override for the number of additional attempts
            description: Label used in log lines

        Returns:
            FetchResult with data or the last error
        """
        retries = self.max_retries if max_retries is None else max_retries
        last_error = None

        for attempt in range(retries + 1):
            self.total_calls += 1
            try:
                data = fn()
                if data is not None and not (hasattr(data, '__len__') and len(data) == 0):
                    if attempt > 0:
                        logger.info(f"{description} succeeded on attempt {attempt + 1}")
                    return FetchResult(data=data, attempts=attempt + 1)
                last_error = f"{description} returned no data"
                retryable = True
            except Exception as e:
                last_error = f"{description} failed: {type(e).__name__}: {e}"
                retryable = is_retryable(e)

            if not retryable:
                logger.error(f"{last_error} (not retryable, giving up after attempt {attempt + 1})")
                return FetchResult(error=last_error, attempts=attempt + 1, retryable=False)

            if attempt < retries:
                delay = self.backoff_delay(attempt)
                self.total_retries += 1
                logger.warning(
                    f"Retry {attempt + 1}/{retries} for {description} in {delay:.2f}s | cause: {last_error}"
                )
                self.sleep(delay)

        logger.error(f"{description} failed after {retries + 1} attempts: {last_error}")
        return FetchResult(error=last_error, attempts=retries + 1)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'total_calls': self.total_calls,
            'total_retries': self.total_retries,
            'max_retries': self.max_retries,
            'base_delay': self.base_delay,
        }
