"""
Tests for retry with backoff and the circuit breaker.
"""

from unittest.mock import Mock, patch

import pytest

from ..error_tracker import FetchError, MediaDownloadError, MediaRateLimitedError, RateLimitedError
from ..resilience import CircuitBreaker, CircuitOpenError, RetryPolicy, with_retry


class TestRetryPolicy:

    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=4.0, jitter=False)
        assert [policy.compute_backoff(i) for i in range(4)] == [1.0, 2.0, 4.0, 4.0]

    def test_jitter_stays_in_window(self):
        policy = RetryPolicy(base_delay_seconds=2.0, jitter=True)
        with patch('random.random', return_value=0.0):
            assert policy.compute_backoff(0) == 1.0
        with patch('random.random', return_value=1.0):
            assert policy.compute_backoff(0) == 3.0

    def test_retry_after_stretches_delay(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=30.0, jitter=False)
        exc = RateLimitedError("slow down", retry_after=12)

        assert policy.delay_for(0, exc) == 12
        assert policy.delay_for(0, FetchError("boom")) == 1.0

    def test_media_retry_after_stretches_delay(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=30.0, jitter=False,
                             retry_on_exceptions=(MediaDownloadError,))

        assert policy.delay_for(1, MediaRateLimitedError("slow down", retry_after=9)) == 9
        assert policy.delay_for(1, MediaDownloadError("HTTP 500")) == 2.0

    def test_retry_after_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=10.0, jitter=False)
        assert policy.delay_for(0, RateLimitedError("slow down", retry_after=600)) == 10.0


class TestWithRetry:

    def setup_method(self):
        self.sleeps = []
        self.policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, jitter=False,
                                  retry_on_exceptions=(FetchError,))

    def test_succeeds_after_transient_failures(self):
        fn = Mock(side_effect=[FetchError("one"), FetchError("two"), "ok"])

        assert with_retry(fn, policy=self.policy, sleep=self.sleeps.append) == "ok"
        assert fn.call_count == 3
        assert self.sleeps == [1.0, 2.0]

    def test_raises_last_error_when_exhausted(self):
        fn = Mock(side_effect=FetchError("down"))

        with pytest.raises(FetchError, match="down"):
            with_retry(fn, policy=self.policy, sleep=self.sleeps.append)
        assert fn.call_count == 3
        assert len(self.sleeps) == 2

    def test_other_exceptions_are_not_retried(self):
        fn = Mock(side_effect=KeyError("missing"))

        with pytest.raises(KeyError):
            with_retry(fn, policy=self.policy, sleep=self.sleeps.append)
        assert fn.call_count == 1
        assert self.sleeps == []

    def test_exhaustion_counts_one_circuit_failure(self):
        breaker = CircuitBreaker(failure_threshold=2)
        fn = Mock(side_effect=FetchError("down"))

        with pytest.raises(FetchError):
            with_retry(fn, policy=self.policy, circuit_breaker=breaker, circuit_key="source",
                       sleep=self.sleeps.append)

        assert breaker.get_state_snapshot()["source"]['failures'] == 1
        assert not breaker.is_open("source")

    def test_open_circuit_fails_fast(self):
        breaker = CircuitBreaker(failure_threshold=1)
        breaker.record_failure("source")
        fn = Mock(return_value="ok")

        with pytest.raises(CircuitOpenError):
            with_retry(fn, policy=self.policy, circuit_breaker=breaker, circuit_key="source")
        fn.assert_not_called()


class TestCircuitBreaker:

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout_seconds=60.0)
        breaker.record_failure("source")
        breaker.record_failure("source")
        assert not breaker.is_open("source")

        breaker.record_failure("source")
        assert breaker.is_open("source")
        assert not breaker.is_open("media")

    def test_success_resets(self):
        breaker = CircuitBreaker(failure_threshold=2)
        breaker.record_failure("source")
        breaker.record_success("source")
        breaker.record_failure("source")

        assert not breaker.is_open("source")

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_seconds=30.0)
        with patch('time.time', return_value=1000.0):
            breaker.record_failure("source")
        with patch('time.time', return_value=1010.0):
            assert breaker.is_open("source")
        with patch('time.time', return_value=1031.0):
            assert not breaker.is_open("source")
