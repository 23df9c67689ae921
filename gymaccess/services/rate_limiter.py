"""
Shared fixed-window rate limiter backed by the database.

Counters live in rate_limit_counters so all service instances observe the
same limits. Each hit is an atomic `count = count + 1` on the
(key, window_start) row; the first hit of a window inserts the row, and a
racing insert falls back to the increment.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gymaccess.config.access_control import AccessControlConfig, get_access_control_config
from gymaccess.errors import RateLimitExceededError
from gymaccess.models.base import utcnow
from gymaccess.models.rate_limit import RateLimitCounter
from gymaccess.repositories.base import run_unit_of_work

logger = logging.getLogger(__name__)

# Per-action (requests, window_seconds) overriding the configured default
ACTION_LIMITS: Dict[str, Tuple[int, int]] = {
    "checkout": (5, 60),
}


def window_start_for(now: datetime, window_seconds: int) -> datetime:
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % window_seconds, tz=timezone.utc)


class RateLimiter:
    """Counts requests per key and rejects those over the limit."""

    def __init__(
        self,
        db_session: Session,
        config: Optional[AccessControlConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.config = config or get_access_control_config()
        self.clock = clock

    def limits_for(self, action: str) -> Tuple[int, int]:
        return ACTION_LIMITS.get(
            action,
            (self.config.rate_limit_requests, self.config.rate_limit_window_seconds),
        )

    def _increment(self, key: str, window_start: datetime) -> int:
        return self.db.query(RateLimitCounter).filter(
            RateLimitCounter.key == key,
            RateLimitCounter.window_start == window_start
        ).update(
            {RateLimitCounter.count: RateLimitCounter.count + 1},
            synchronize_session=False
        )

    def _current_count(self, key: str, window_start: datetime) -> int:
        row = self.db.query(RateLimitCounter.count).filter(
            RateLimitCounter.key == key,
            RateLimitCounter.window_start == window_start
        ).first()
        return row[0] if row else 0

    def purge_expired(self, now: datetime) -> int:
        """Delete counters whose window has ended."""
        return self.db.query(RateLimitCounter).filter(
            RateLimitCounter.expires_at <= now
        ).delete(synchronize_session=False)

    def hit(self, action: str, subject: str) -> int:
        """
        Count one request for (action, subject).

        Returns:
            The request count in the current window

        Raises:
            RateLimitExceededError: The limit for the window is exceeded
            PersistenceError: If the store fails
        """
        limit, window_seconds = self.limits_for(action)
        key = f"{action}:{subject}"

        def work():
            now = self.clock()
            window_start = window_start_for(now, window_seconds)

            if not self._increment(key, window_start):
                try:
                    self.purge_expired(now)
                    self.db.add(RateLimitCounter(
                        key=key,
                        window_start=window_start,
                        count=1,
                        expires_at=window_start + timedelta(seconds=window_seconds),
                    ))
                    self.db.flush()
                except IntegrityError:
                    # Another request opened the window first
                    self.db.rollback()
                    self._increment(key, window_start)

            count = self._current_count(key, window_start)
            self.db.commit()
            return now, window_start, count

        now, window_start, count = run_unit_of_work(self.db, "rate_limit", work)

        if count > limit:
            retry_after = int((window_start + timedelta(seconds=window_seconds) - now).total_seconds())
            logger.warning("Rate limit exceeded", extra={
                "action": action,
                "subject": subject,
                "count": count,
                "limit": limit,
            })
            raise RateLimitExceededError(retry_after_seconds=max(retry_after, 1))

        return count
