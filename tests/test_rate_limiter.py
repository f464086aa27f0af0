"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

import pytest

from report_relay.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    def test_admits_up_to_limit(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(3, clock=clock)

        for _ in range(3):
            assert limiter.try_admit()
            limiter.record_send()

        assert not limiter.try_admit()
        assert limiter.in_window() == 3

    def test_admission_reserves_a_slot(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(1, clock=clock)

        assert limiter.try_admit()
        assert not limiter.try_admit()
        assert limiter.in_window() == 1

    def test_release_returns_the_slot(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(1, clock=clock)
        assert limiter.try_admit()

        limiter.release()

        assert limiter.in_window() == 0
        assert limiter.try_admit()

    def test_reserved_slot_is_stamped_on_send(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(1, clock=clock)
        assert limiter.try_admit()
        clock.advance(30)
        limiter.record_send()

        clock.advance(45)
        assert not limiter.try_admit()
        assert limiter.retry_after() == pytest.approx(15.0)

    def test_retry_after_while_only_reservations_hold_the_window(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(1, clock=clock)
        assert limiter.try_admit()

        assert limiter.retry_after() == 0.0

    def test_window_slides(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(2, clock=clock)
        limiter.record_send()
        clock.advance(30)
        limiter.record_send()

        assert not limiter.try_admit()

        clock.advance(30)  # first send is exactly one window old
        assert limiter.in_window() == 1
        assert limiter.try_admit()

    def test_never_more_than_limit_in_any_window(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(10, clock=clock)
        sends: list[float] = []

        for _ in range(600):
            if limiter.try_admit():
                limiter.record_send()
                sends.append(clock.now)
            clock.advance(0.5)

        for start in sends:
            assert sum(1 for t in sends if start <= t < start + 60) <= 10

    def test_retry_after(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(2, clock=clock)
        assert limiter.retry_after() == 0.0

        limiter.record_send()
        clock.advance(10)
        limiter.record_send()
        clock.advance(5)

        assert limiter.retry_after() == pytest.approx(45.0)

    def test_rejects_non_positive_limit(self) -> None:
        with pytest.raises(ValueError, match="must be positive"):
            SlidingWindowRateLimiter(0)
