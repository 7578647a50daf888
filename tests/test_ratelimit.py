"""Tests for the rolling-window rate limiter."""

import pytest

from clipkeep.ratelimit import RollingRateLimiter


class TestRollingRateLimiter:
    def test_allows_up_to_limit(self, fake_clock):
        limiter = RollingRateLimiter(3, 60.0, clock=fake_clock)
        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
        assert limiter.in_window() == 3

    def test_rejections_do_not_count(self, fake_clock):
        limiter = RollingRateLimiter(1, 10.0, clock=fake_clock)
        limiter.try_acquire()
        for _ in range(5):
            assert not limiter.try_acquire()
        assert limiter.in_window() == 1

    def test_window_rolls(self, fake_clock):
        limiter = RollingRateLimiter(2, 10.0, clock=fake_clock)
        limiter.try_acquire()
        fake_clock.advance(5)
        limiter.try_acquire()
        assert not limiter.try_acquire()
        fake_clock.advance(5)  # first stamp now exactly one window old
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

    def test_retry_after(self, fake_clock):
        limiter = RollingRateLimiter(1, 10.0, clock=fake_clock)
        assert limiter.retry_after() == 0.0
        limiter.try_acquire()
        fake_clock.advance(4)
        assert limiter.retry_after() == pytest.approx(6.0)

    def test_reset(self, fake_clock):
        limiter = RollingRateLimiter(1, 10.0, clock=fake_clock)
        limiter.try_acquire()
        limiter.reset()
        assert limiter.try_acquire()

    @pytest.mark.parametrize("limit,window", [(0, 1.0), (1, 0.0), (1, -5.0)])
    def test_invalid_arguments(self, limit, window):
        with pytest.raises(ValueError):
            RollingRateLimiter(limit, window)
