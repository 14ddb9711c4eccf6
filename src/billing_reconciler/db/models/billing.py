"""
Processed event model (idempotency record)
"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from datetime import datetime

from ..base import Base


class ProcessedEvent(Base):
    """
    Append-only record of fully processed processor events

    The unique constraint on `event_id` is what makes the duplicate check
    atomic under concurrent delivery.
    """
    __tablename__ = "processed_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(100), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    outcome = Column(String(50), nullable=False)
    event_created_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_processed_events_event_id"),
    )

    def __repr__(self):
        return f"<ProcessedEvent(event_id={self.event_id}, event_type={self.event_type}, outcome={self.outcome})>"
