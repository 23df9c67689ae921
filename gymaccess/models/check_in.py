"""
CheckInSession model for physical facility visits.

CRITICAL: At most one open session (check_out_time IS NULL) per user,
enforced by a partial unique index.
"""

from sqlalchemy import Column, String, Index, text

from gymaccess.models.base import Base, UTCDateTime, generate_uuid


class CheckInSession(Base):
    """
    One visit to the facility.

    Created by check-in, closed by check-out, never otherwise mutated.
    """

    __tablename__ = "check_ins"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    user_id = Column(
        String(255),
        nullable=False,
        index=True
    )
    check_in_time = Column(UTCDateTime, nullable=False)
    check_out_time = Column(UTCDateTime, nullable=True)
    location = Column(
        String(64),
        nullable=True,
        comment="Claimed coordinate at check-in as 'lat,lng'"
    )

    __table_args__ = (
        Index(
            "uq_check_ins_one_open",
            "user_id",
            unique=True,
            postgresql_where=text("check_out_time IS NULL"),
            sqlite_where=text("check_out_time IS NULL"),
        ),
        Index("ix_check_ins_user_time", "user_id", "check_in_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<CheckInSession(id={self.id}, user_id={self.user_id}, "
            f"check_in_time={self.check_in_time}, check_out_time={self.check_out_time})>"
        )

    @property
    def is_open(self) -> bool:
        return self.check_out_time is None
