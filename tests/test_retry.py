import random

import pytest
import requests

from ema_trader.retry import (
    FetchResult,
    NonRetryableFetchError,
    RetryableFetchError,
    RetryingFetcher,
    is_retryable,
)


class StatusError(Exception):
    def __init__(self, status_code, message="api error"):
        super().__init__(message)
        self.status_code = status_code


class FlakyCall:
    """Fails `failures` times with `error`, then returns `data`."""

    def __init__(self, failures, error=None, data="bars"):
        self.failures = failures
        self.error = error or TimeoutError("read timed out")
        self.data = data
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.data


def test_retry_then_succeed(fetcher, no_sleep):
    _, delays = no_sleep
    call = FlakyCall(failures=2)

    result = fetcher.fetch_with_retry(call)

    assert call.calls == 3
    assert result.ok
    assert result.data == "bars"
    assert result.attempts == 3
    assert len(delays) == 2


def test_retry_exhaustion(fetcher, no_sleep):
    _, delays = no_sleep
    call = FlakyCall(failures=100)

    result = fetcher.fetch_with_retry(call)

    assert call.calls == fetcher.max_retries + 1
    assert not result.ok
    assert "TimeoutError" in result.error
    assert len(delays) == fetcher.max_retries


def test_max_retries_override(fetcher):
    call = FlakyCall(failures=100)
    fetcher.fetch_with_retry(call, max_retries=1)
    assert call.calls == 2


def test_non_retryable_short_circuits(fetcher, no_sleep):
    _, delays = no_sleep
    call = FlakyCall(failures=100, error=StatusError(401, "unauthorized"))

    result = fetcher.fetch_with_retry(call)

    assert call.calls == 1
    assert not result.ok
    assert result.retryable is False
    assert delays == []


def test_empty_results_are_retried(fetcher):
    calls = []

    def empty_then_data():
        calls.append(1)
        return [] if len(calls) == 1 else None if len(calls) == 2 else [1.0]

    result = fetcher.fetch_with_retry(empty_then_data)
    assert result.ok
    assert len(calls) == 3


def test_backoff_delays_within_jitter_bounds():
    fetcher = RetryingFetcher(base_delay=2.0, rng=random.Random(7), sleep=lambda _: None)
    for attempt in range(4):
        delay = fetcher.backoff_delay(attempt)
        expected = 2.0 * 2 ** attempt
        assert expected * 0.5 <= delay <= expected * 1.5


def test_stats_track_calls_and_retries(fetcher):
    fetcher.fetch_with_retry(FlakyCall(failures=1))
    stats = fetcher.get_stats()
    assert stats['total_calls'] == 2
    assert stats['total_retries'] == 1


def test_from_config():
    fetcher = RetryingFetcher.from_config({'retry': {'max_retries': 5, 'base_delay_seconds': 0.5}})
    assert fetcher.max_retries == 5
    assert fetcher.base_delay == 0.5


def test_negative_retries_rejected():
    with pytest.raises(ValueError):
        RetryingFetcher(max_retries=-1)


def _http_error(status):
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


@pytest.mark.parametrize("error, expected", [
    (requests.Timeout("timed out"), True),
    (requests.ConnectionError("reset"), True),
    (_http_error(503), True),
    (_http_error(404), False),
    (StatusError(429), True),
    (StatusError(403), False),
    (Exception("Rate limit exceeded"), True),
    (Exception("request is not authorized"), False),
    (ValueError("bad symbol"), False),
    (RuntimeError("something odd"), True),
    (RetryableFetchError("empty"), True),
    (NonRetryableFetchError("bad key"), False),
])
def test_is_retryable(error, expected):
    assert is_retryable(error) is expected


def test_fetch_result_repr():
    assert not FetchResult(error="x").ok
    assert FetchResult(data=[1]).ok
    assert "attempts=0" in repr(FetchResult())
