"""
Idempotency Ledger - append-only record of fully processed events
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models.billing import ProcessedEvent
from ..exceptions import DuplicateEventError
from ..utils import utcnow

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """
    Records which processor event IDs have been fully processed

    `mark_processed` writes inside the caller's transaction; the row only
    becomes visible when the handler's ledger writes commit with it.
    """

    def __init__(self, db: Session):
        self.db = db

    def has_processed(self, event_id: str) -> bool:
        """Check whether an event has already been processed"""
        return self.db.query(ProcessedEvent.id).filter(
            ProcessedEvent.event_id == event_id
        ).first() is not None

    def get_record(self, event_id: str) -> Optional[ProcessedEvent]:
        return self.db.query(ProcessedEvent).filter(
            ProcessedEvent.event_id == event_id
        ).first()

    def mark_processed(
        self,
        event_id: str,
        event_type: str,
        outcome: str,
        event_created_at: Optional[datetime] = None,
    ) -> ProcessedEvent:
        """
        Record an event as processed

        Raises:
            DuplicateEventError: another delivery of the same event won the race
        """
        record = ProcessedEvent(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            event_created_at=event_created_at,
            processed_at=utcnow(),
        )

        try:
            with self.db.begin_nested():
                self.db.add(record)
                self.db.flush()
        except IntegrityError:
            logger.info(f"Event {event_id} was recorded concurrently")
            raise DuplicateEventError(event_id)

        logger.debug(f"Marked event {event_id} ({event_type}) processed: {outcome}")
        return record
