"""
ProcessorEvent model for tracking applied payment-processor events.

Used for idempotency - ensures each lifecycle event is applied exactly once.
"""

from sqlalchemy import Column, String, Index

from gymaccess.models.base import Base, UTCDateTime, generate_uuid, utcnow


class ProcessorEvent(Base):
    """
    Tracks processed subscription lifecycle events for deduplication.

    The processor may deliver events more than once and in any order.
    Ordering is handled on the membership row (processor_synced_at); this
    table only prevents reprocessing of the same delivery.
    """

    __tablename__ = "processor_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Processor event ID"
    )
    event_type = Column(
        String(100),
        nullable=False,
        comment="e.g. customer.subscription.updated"
    )
    subscription_ref = Column(
        String(255),
        nullable=True,
        index=True
    )
    event_created_at = Column(
        UTCDateTime,
        nullable=False,
        comment="When the processor created the event"
    )
    processed_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("ix_processor_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<ProcessorEvent(event_id={self.event_id}, event_type={self.event_type})>"
