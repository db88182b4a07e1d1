#!/usr/bin/env python3
"""
Tests for the shared retry policy
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import requests

from airdrop.errors import NetworkFetchError, SkipLimitExceeded
from airdrop.retry import RetryPolicy


class TestRetryPolicy:
    """Test class for RetryPolicy"""

    def setup_method(self):
        self.policy = RetryPolicy(max_attempts=3, base_delay=0, jitter=0)

    def test_delay_grows_and_is_capped(self):
        """Test exponential backoff with a cap"""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, backoff=2.0, jitter=0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_bounds(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=100.0, jitter=0.1)
        for _ in range(20):
            assert 9.0 <= policy.delay_for(1) <= 11.0

    def test_succeeds_after_transient_failures(self):
        """Test retryable errors are retried until success"""
        func = AsyncMock(side_effect=[requests.exceptions.Timeout("slow"), NetworkFetchError("502"), "ok"])
        assert asyncio.run(self.policy.run(func, 1, description="test")) == "ok"
        assert func.await_count == 3
        func.assert_awaited_with(1)

    def test_gives_up_after_max_attempts(self):
        """Test exhaustion raises NetworkFetchError with the attempt count"""
        func = AsyncMock(side_effect=asyncio.TimeoutError())
        with pytest.raises(NetworkFetchError) as exc_info:
            asyncio.run(self.policy.run(func))
        assert func.await_count == 3
        assert exc_info.value.metadata["attempts"] == 3
        assert exc_info.value.metadata["cause_type"] == "TimeoutError"

    def test_non_retryable_error_propagates(self):
        """Test other exceptions are not retried"""
        func = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            asyncio.run(self.policy.run(func))
        assert func.await_count == 1

    def test_skip_limit_is_not_retried(self):
        """Test SkipLimitExceeded goes straight to the caller"""
        func = AsyncMock(side_effect=SkipLimitExceeded("skip too large"))
        with pytest.raises(SkipLimitExceeded):
            asyncio.run(self.policy.run(func))
        assert func.await_count == 1

    @patch("airdrop.retry.asyncio.sleep", new_callable=AsyncMock)
    def test_sleeps_between_attempts(self, mock_sleep):
        """Test one backoff sleep per failed attempt except the last"""
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, backoff=2.0, jitter=0)
        func = AsyncMock(side_effect=ConnectionError("reset"))
        with pytest.raises(NetworkFetchError):
            asyncio.run(policy.run(func))
        assert [call.args[0] for call in mock_sleep.await_args_list] == [1.0, 2.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
