"""Tests for retry utilities."""

from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from kubeprov.utils.retry import is_throttling_error, retry_on_exception, retry_on_throttling


class TestException(Exception):
    """Test exception."""


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "DescribeCluster")


def test_retry_on_exception_success_first_try():
    """Test successful execution on first try."""
    call_count = 0

    @retry_on_exception(max_attempts=3)
    def func():
        nonlocal call_count
        call_count += 1
        return "success"

    assert func() == "success"
    assert call_count == 1


def test_retry_on_exception_success_after_retries():
    """Test successful execution after retries."""
    call_count = 0

    @retry_on_exception(exceptions=(TestException,), max_attempts=3, min_wait=0.01, max_wait=0.1)
    def func():
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            raise TestException("Temporary error")
        return "success"

    assert func() == "success"
    assert call_count == 3


def test_retry_on_exception_exhausted():
    """Test the last exception is re-raised after exhaustion."""

    @retry_on_exception(exceptions=(TestException,), max_attempts=2, min_wait=0.01, max_wait=0.1)
    def func():
        raise TestException("Persistent error")

    with pytest.raises(TestException, match="Persistent error"):
        func()


def test_is_throttling_error():
    """Test throttling classification."""
    assert is_throttling_error(_client_error("ThrottlingException"))
    assert is_throttling_error(_client_error("TooManyRequestsException"))
    assert not is_throttling_error(_client_error("AccessDeniedException"))
    assert not is_throttling_error(ValueError("nope"))


class TestRetryOnThrottling:
    """Tests for retry_on_throttling."""

    def test_retries_throttling(self):
        """Test throttled calls are retried until they succeed."""
        call_count = 0

        @retry_on_throttling(max_attempts=3)
        def func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise _client_error("Throttling")
            return "ok"

        with patch("tenacity.nap.time.sleep") as mock_sleep:
            assert func() == "ok"

        assert call_count == 3
        assert mock_sleep.call_count == 2

    def test_does_not_retry_other_errors(self):
        """Test non-transient errors are raised on the first attempt."""
        call_count = 0

        @retry_on_throttling(max_attempts=3)
        def func():
            nonlocal call_count
            call_count += 1
            raise _client_error("InvalidParameterException")

        with pytest.raises(ClientError):
            func()

        assert call_count == 1

    def test_exhausted_reraises_client_error(self):
        """Test exhaustion re-raises the throttling error."""

        @retry_on_throttling(max_attempts=2)
        def func():
            raise _client_error("RequestLimitExceeded")

        with patch("tenacity.nap.time.sleep"):
            with pytest.raises(ClientError):
                func()
