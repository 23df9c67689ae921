"""
Base mixins and column types for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- UTCDateTime: timezone-aware timestamps on every backend
- generate_uuid: UUID generation for primary keys
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, func, TypeDecorator

from gymaccess.db_base import Base


class UTCDateTime(TypeDecorator):
    """
    Timestamp type that always round-trips as an aware UTC datetime.

    PostgreSQL stores TIMESTAMPTZ natively. SQLite has no timezone support,
    so values are normalized to naive UTC on the way in and re-tagged with
    UTC on the way out. Comparison literals in WHERE clauses go through the
    same conversion, which keeps conditional updates correct on both.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Timestamp when record was last updated"
    )


__all__ = ["Base", "UTCDateTime", "TimestampMixin", "generate_uuid", "utcnow"]
