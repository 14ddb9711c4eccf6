"""
Dispute models

A dispute is a first-class entity linked to the disputed payment, with
evidence collection tracked as separate tasks.
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Boolean, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class DisputeStatus(str, enum.Enum):
    """Dispute status enum (processor values)"""
    WARNING_NEEDS_RESPONSE = "warning_needs_response"
    WARNING_UNDER_REVIEW = "warning_under_review"
    WARNING_CLOSED = "warning_closed"
    NEEDS_RESPONSE = "needs_response"
    UNDER_REVIEW = "under_review"
    WON = "won"
    LOST = "lost"


CLOSED_DISPUTE_STATUSES = {
    DisputeStatus.WARNING_CLOSED.value,
    DisputeStatus.WON.value,
    DisputeStatus.LOST.value,
}


class EvidenceTaskStatus(str, enum.Enum):
    """Evidence collection task status"""
    PENDING_COLLECTION = "pending_collection"
    COLLECTED = "collected"


class Dispute(Base):
    """
    Chargeback/dispute opened against a payment

    `escalated` is computed once at creation and never cleared.
    """
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    processor_dispute_id = Column(String(100), nullable=False, unique=True, index=True)
    processor_charge_id = Column(String(100), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    reason = Column(String(50), nullable=True)
    network_reason_code = Column(String(50), nullable=True)
    status = Column(String(30), default=DisputeStatus.NEEDS_RESPONSE.value, nullable=False, index=True)

    escalated = Column(Boolean, default=False, nullable=False, index=True)
    evidence_due_by = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    last_event_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    extra_metadata = Column(JSONType, nullable=True)

    # Relationships
    payment = relationship("Payment", back_populates="disputes")
    evidence_tasks = relationship("DisputeEvidenceTask", back_populates="dispute", order_by="DisputeEvidenceTask.id")

    def __repr__(self):
        return f"<Dispute(id={self.id}, processor_dispute_id={self.processor_dispute_id}, amount={self.amount}, escalated={self.escalated})>"


class DisputeEvidenceTask(Base):
    """Evidence document to be gathered for a dispute response"""
    __tablename__ = "dispute_evidence_tasks"

    id = Column(Integer, primary_key=True, index=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=False, index=True)
    category = Column(String(50), nullable=False)
    status = Column(String(30), default=EvidenceTaskStatus.PENDING_COLLECTION.value, nullable=False, index=True)
    due_date = Column(DateTime, nullable=False)
    collected_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    dispute = relationship("Dispute", back_populates="evidence_tasks")

    __table_args__ = (
        UniqueConstraint("dispute_id", "category", name="uq_dispute_evidence_tasks_dispute_category"),
        Index("idx_dispute_evidence_tasks_status_due", "status", "due_date"),
    )
