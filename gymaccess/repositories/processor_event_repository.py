"""
Processor event repository for lifecycle-event deduplication.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from gymaccess.models.processor_event import ProcessorEvent

logger = logging.getLogger(__name__)


class ProcessorEventRepository:
    """
    Tracks processed processor events to ensure idempotency.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def is_processed(self, event_id: str) -> bool:
        """
        Check if an event has already been applied.

        Args:
            event_id: Processor event ID

        Returns:
            True if already processed, False otherwise
        """
        existing = self.db.query(ProcessorEvent).filter(
            ProcessorEvent.event_id == event_id
        ).first()

        return existing is not None

    def mark_processed(
        self,
        event_id: str,
        event_type: str,
        event_created_at: datetime,
        processed_at: datetime,
        subscription_ref: Optional[str] = None
    ) -> ProcessorEvent:
        """
        Record an event as applied.

        Raises IntegrityError if a concurrent delivery recorded it first.
        """
        event = ProcessorEvent(
            event_id=event_id,
            event_type=event_type,
            subscription_ref=subscription_ref,
            event_created_at=event_created_at,
            processed_at=processed_at,
        )
        self.db.add(event)
        self.db.flush()
        return event
