"""
Unit tests for the shared fixed-window rate limiter.
"""

import pytest

from gymaccess.errors import RateLimitExceededError
from gymaccess.models.rate_limit import RateLimitCounter
from gymaccess.services.rate_limiter import RateLimiter, window_start_for


@pytest.fixture
def limiter(db_session, access_config, clock):
    config = access_config.model_copy(update={"rate_limit_requests": 3, "rate_limit_window_seconds": 60})
    return RateLimiter(db_session, config, clock)


class TestRateLimiter:

    def test_counts_hits_within_window(self, limiter):
        assert [limiter.hit("check-in", "user-1") for _ in range(3)] == [1, 2, 3]

    def test_rejects_over_limit_with_retry_after(self, limiter, clock):
        for _ in range(3):
            limiter.hit("check-in", "user-1")

        clock.advance(seconds=15)
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.hit("check-in", "user-1")

        assert exc_info.value.retry_after_seconds == 45
        assert exc_info.value.to_dict()["retry_after_seconds"] == 45

    def test_subjects_and_actions_are_independent(self, limiter):
        for _ in range(3):
            limiter.hit("check-in", "user-1")

        assert limiter.hit("check-in", "user-2") == 1
        assert limiter.hit("check-out", "user-1") == 1

    def test_new_window_resets_count(self, limiter, clock):
        for _ in range(3):
            limiter.hit("check-in", "user-1")

        clock.advance(seconds=60)

        assert limiter.hit("check-in", "user-1") == 1

    def test_expired_windows_are_purged(self, db_session, limiter, clock):
        limiter.hit("check-in", "user-1")
        clock.advance(minutes=5)

        limiter.hit("check-in", "user-1")

        assert db_session.query(RateLimitCounter).count() == 1

    def test_checkout_has_its_own_limit(self, limiter):
        assert limiter.limits_for("checkout") == (5, 60)
        assert limiter.limits_for("cancel") == (3, 60)

        for _ in range(5):
            limiter.hit("checkout", "user-1")
        with pytest.raises(RateLimitExceededError):
            limiter.hit("checkout", "user-1")

    def test_counter_shared_between_limiter_instances(self, db_session, access_config, clock):
        config = access_config.model_copy(update={"rate_limit_requests": 2})
        first = RateLimiter(db_session, config, clock)
        second = RateLimiter(db_session, config, clock)

        first.hit("qr-scan", "user-1")
        second.hit("qr-scan", "user-1")

        with pytest.raises(RateLimitExceededError):
            first.hit("qr-scan", "user-1")


def test_window_start_alignment(clock):
    clock.advance(seconds=37)
    assert window_start_for(clock(), 60) == clock().replace(second=0)
