"""
Unit tests for backoff.py module.

Tests the exponential reconnect delay and the restart-required schedule.
"""

from unittest.mock import patch

import pytest

from wa_gateway.backoff import ReconnectBackoff, reconnect_delay_ms, restart_required_delay_ms


class TestReconnectDelay:
    """Tests for ReconnectBackoff.get_delay_ms"""

    @pytest.mark.parametrize("attempt", range(0, 20))
    def test_delay_within_bounds(self, attempt):
        """Test that delay stays within [min(2^a*1000, 60000), +1000)"""
        floor = min(1000 * 2**attempt, 60000)
        for _ in range(20):
            delay = reconnect_delay_ms(attempt)
            assert floor <= delay < floor + 1000
            assert delay <= 61000

    def test_jitter_is_added(self):
        """Test that the random jitter is added on top of the base delay"""
        backoff = ReconnectBackoff()
        with patch("wa_gateway.backoff.random.randrange", return_value=999):
            assert backoff.get_delay_ms(0) == 1999
            assert backoff.get_delay_ms(2) == 4999

    def test_huge_attempt_is_clamped(self):
        """Test that very large attempt counts do not overflow"""
        backoff = ReconnectBackoff(jitter_ms=0)
        assert backoff.get_delay_ms(10_000) == 60000

    def test_negative_attempt_treated_as_zero(self):
        """Test that a negative attempt count behaves like the first attempt"""
        backoff = ReconnectBackoff(jitter_ms=0)
        assert backoff.get_delay_ms(-3) == 1000

    def test_zero_jitter(self):
        """Test that jitter can be disabled"""
        backoff = ReconnectBackoff(base_delay_ms=10, max_delay_ms=100, jitter_ms=0)
        assert [backoff.get_delay_ms(a) for a in range(5)] == [10, 20, 40, 80, 100]


class TestRestartRequiredDelay:
    """Tests for the restart-required schedule"""

    def test_linear_schedule(self):
        """Test the 500ms base plus 200ms per attempt"""
        assert restart_required_delay_ms(0) == 500
        assert restart_required_delay_ms(1) == 700
        assert restart_required_delay_ms(3) == 1100

    def test_repr(self):
        """Test the readable representation"""
        assert repr(ReconnectBackoff()) == "ReconnectBackoff(base=1000ms, max=60000ms, jitter=1000ms)"
