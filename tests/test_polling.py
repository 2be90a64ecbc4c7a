"""
Unit tests for the bounded polling policy.
"""

import pytest

from enhpix.config.loader import PollSettings
from enhpix.core.polling import DEFAULT_MAX_INTERVAL, PollPolicy


class TestPollPolicy:
    """Test delay schedule and validation."""

    def test_defaults(self):
        policy = PollPolicy()
        assert policy.max_attempts == 300
        assert policy.delay_for(0) == 1.0
        assert policy.delay_for(299) == 1.0
        assert policy.total_wait == 300.0

    def test_backoff(self):
        policy = PollPolicy(max_attempts=4, interval=0.5, backoff=2.0)
        assert list(policy.delays()) == [0.5, 1.0, 2.0, 4.0]

    def test_backoff_capped(self):
        policy = PollPolicy(max_attempts=5, interval=1.0, backoff=3.0, max_interval=5.0)
        assert list(policy.delays()) == [1.0, 3.0, 5.0, 5.0, 5.0]

    def test_zero_interval(self):
        policy = PollPolicy(max_attempts=3, interval=0)
        assert policy.total_wait == 0

    @pytest.mark.parametrize("kwargs,message", [
        ({"max_attempts": 0}, "max_attempts"),
        ({"interval": -1}, "interval"),
        ({"backoff": 0.5}, "backoff"),
    ])
    def test_invalid_values(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            PollPolicy(**kwargs)

    def test_from_settings(self):
        settings = PollSettings(max_attempts=10, interval_seconds=0.25, backoff=1.5, max_interval_seconds=2.0)
        policy = PollPolicy.from_settings(settings)
        assert policy == PollPolicy(max_attempts=10, interval=0.25, backoff=1.5, max_interval=2.0)

    def test_steep_backoff_stays_at_cap(self):
        """Late attempts of a long, steep schedule return the cap without overflowing."""
        policy = PollPolicy(max_attempts=400, interval=1.0, backoff=10.0, max_interval=30.0)

        assert policy.delay_for(1) == 10.0
        assert policy.delay_for(2) == 30.0
        assert policy.delay_for(320) == 30.0
        assert policy.total_wait == pytest.approx(1.0 + 10.0 + 30.0 * 398)

    def test_uncapped_backoff_uses_default_ceiling(self):
        policy = PollPolicy(max_attempts=2000, interval=1.0, backoff=2.0)

        assert policy.delay_for(3) == 8.0
        assert policy.delay_for(1500) == DEFAULT_MAX_INTERVAL
        assert policy.total_wait < 2000 * DEFAULT_MAX_INTERVAL

    def test_cap_below_interval(self):
        with pytest.raises(ValueError, match="max_interval"):
            PollPolicy(interval=5.0, max_interval=1.0)
