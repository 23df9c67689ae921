"""
Shared rate limit counters.

Counters live in the database so every service instance observes the
same limits. One row per (key, window_start); expired windows are purged.
"""

from sqlalchemy import Column, String, Integer, UniqueConstraint, Index

from gymaccess.models.base import Base, UTCDateTime, generate_uuid


class RateLimitCounter(Base):
    """Keyed fixed-window counter with a TTL."""

    __tablename__ = "rate_limit_counters"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    key = Column(
        String(255),
        nullable=False,
        comment="Limiter key, e.g. 'check-in:<user_id>'"
    )
    window_start = Column(UTCDateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    expires_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("key", "window_start", name="uq_rate_limit_counters_window"),
        Index("ix_rate_limit_counters_expires", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitCounter(key={self.key}, window_start={self.window_start}, count={self.count})>"
