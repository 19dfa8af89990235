# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Unit tests for the bounded polling helper
"""

import pytest

from org_bootstrap.exceptions import WaitTimeoutError
from org_bootstrap.polling import PollStatus, calculate_backoff, poll_until


class TestPollUntil:
    """Test poll_until terminal results"""

    def test_success_after_pending(self):
        """Test PENDING keeps polling until SUCCESS"""
        statuses = iter([PollStatus.PENDING, PollStatus.PENDING, PollStatus.SUCCESS])
        sleeps = []

        result = poll_until(
            lambda: (next(statuses), "value"),
            max_attempts=5,
            interval=2,
            sleep=sleeps.append,
        )

        assert result.succeeded
        assert result.attempts == 3
        assert result.value == "value"
        assert sleeps == [2, 2]

    def test_failed_is_terminal(self):
        """Test FAILED stops immediately"""
        result = poll_until(lambda: (PollStatus.FAILED, {"reason": "x"}), 5, 0, sleep=lambda s: None)

        assert result.status == PollStatus.FAILED
        assert result.attempts == 1
        assert result.value == {"reason": "x"}

    def test_times_out_without_trailing_sleep(self):
        """Test the attempt limit is honored and no sleep follows the last attempt"""
        sleeps = []
        calls = []

        def check():
            calls.append(1)
            return PollStatus.PENDING, None

        result = poll_until(check, max_attempts=3, interval=1, sleep=sleeps.append)

        assert result.status == PollStatus.TIMED_OUT
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_raise_on_timeout(self):
        """Test timeout converts to WaitTimeoutError"""
        result = poll_until(lambda: (PollStatus.PENDING, None), 1, 0, sleep=lambda s: None)

        with pytest.raises(WaitTimeoutError, match="account creation"):
            result.raise_on_timeout("account creation")

    def test_raise_on_timeout_passes_success_through(self):
        """Test non-timeout results are returned unchanged"""
        result = poll_until(lambda: (PollStatus.SUCCESS, 1), 1, 0)

        assert result.raise_on_timeout("anything") is result

    def test_rejects_zero_attempts(self):
        """Test max_attempts must be positive"""
        with pytest.raises(ValueError):
            poll_until(lambda: (PollStatus.SUCCESS, None), 0, 0)

    def test_backoff_intervals_grow(self):
        """Test backoff mode sleeps with increasing delays"""
        sleeps = []
        poll_until(
            lambda: (PollStatus.PENDING, None),
            max_attempts=4,
            interval=1,
            sleep=sleeps.append,
            backoff=True,
        )

        assert len(sleeps) == 3
        assert sleeps[0] < sleeps[1] < sleeps[2]


class TestCalculateBackoff:
    """Test exponential backoff calculation"""

    def test_exponential_with_jitter(self):
        """Test backoff doubles and adds at most 10% jitter"""
        for attempt, base in [(0, 2.0), (1, 4.0), (2, 8.0)]:
            delay = calculate_backoff(attempt)
            assert base <= delay <= base * 1.1

    def test_capped(self):
        """Test backoff never exceeds the cap plus jitter"""
        delay = calculate_backoff(10, initial_backoff=2.0, max_backoff=30.0)
        assert 30.0 <= delay <= 33.0
