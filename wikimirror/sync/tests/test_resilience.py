"""
Tests for retry with backoff and the circuit breaker.
"""

from unittest.mock import Mock

import pytest

from ..error_tracker import NotFound, RequestFailed, TransientServerError
from ..resilience import CircuitBreaker, RetryPolicy, with_retry


class TestRetryPolicy:

    def test_backoff_doubles(self):
        policy = RetryPolicy(base_delay_seconds=1.0)

        assert [policy.compute_backoff(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=10.0, max_delay_seconds=15.0)

        assert policy.compute_backoff(3) == 15.0


class TestWithRetry:

    @pytest.fixture
    def sleeps(self):
        return []

    def test_retries_transient_errors_then_succeeds(self, sleeps):
        fn = Mock(side_effect=[TransientServerError("503", status_code=503), "ok"])

        result = with_retry(fn, policy=RetryPolicy(), sleep=sleeps.append)

        assert result == "ok"
        assert fn.call_count == 2
        assert sleeps == [1.0]

    def test_exhausted_server_error_is_reraised(self, sleeps):
        fn = Mock(side_effect=TransientServerError("502", status_code=502))

        with pytest.raises(TransientServerError):
            with_retry(fn, policy=RetryPolicy(max_attempts=3), sleep=sleeps.append)
        assert fn.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted_network_error_becomes_request_failed(self, sleeps):
        fn = Mock(side_effect=TransientServerError("connection reset", network=True))

        with pytest.raises(RequestFailed):
            with_retry(fn, policy=RetryPolicy(max_attempts=2), sleep=sleeps.append)
        assert fn.call_count == 2

    def test_client_errors_are_not_retried(self, sleeps):
        fn = Mock(side_effect=NotFound("404"))

        with pytest.raises(NotFound):
            with_retry(fn, policy=RetryPolicy(), sleep=sleeps.append)
        assert fn.call_count == 1
        assert sleeps == []

    def test_open_circuit_short_circuits(self, sleeps):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_seconds=60)
        failing = Mock(side_effect=TransientServerError("500", status_code=500))
        with pytest.raises(TransientServerError):
            with_retry(failing, policy=RetryPolicy(max_attempts=1), circuit_breaker=breaker,
                       circuit_key="osrs", sleep=sleeps.append)

        fn = Mock(return_value="ok")
        with pytest.raises(RequestFailed):
            with_retry(fn, policy=RetryPolicy(), circuit_breaker=breaker, circuit_key="osrs", sleep=sleeps.append)
        fn.assert_not_called()

    def test_success_resets_circuit(self):
        breaker = CircuitBreaker(failure_threshold=2)
        breaker.record_failure("osrs")
        breaker.record_success("osrs")
        breaker.record_failure("osrs")

        assert not breaker.is_open("osrs")
