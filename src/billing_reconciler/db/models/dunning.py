"""
Payment retry model for failed invoice recovery
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Index, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class PaymentRetryStatus(str, enum.Enum):
    """Retry state per failing invoice"""
    FAILED = "failed"
    SUSPENDED = "suspended"
    RECOVERED = "recovered"


class PaymentRetry(Base):
    """
    Retry and grace-period tracking for a failing invoice

    One row per processor invoice id. The grace deadline is fixed at the
    first failure; later failures only bump the attempt count.
    """
    __tablename__ = "payment_retries"

    id = Column(Integer, primary_key=True, index=True)
    processor_invoice_id = Column(String(100), nullable=False, unique=True, index=True)

    # Relationships
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    status = Column(String(20), default=PaymentRetryStatus.FAILED.value, nullable=False, index=True)

    # Financial details
    amount_due = Column(Numeric(12, 2), default=0, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)

    # Attempts
    attempt_count = Column(Integer, default=0, nullable=False)
    first_failed_at = Column(DateTime, nullable=False)
    last_failed_at = Column(DateTime, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)
    grace_deadline = Column(DateTime, nullable=False, index=True)

    # Suspension
    processor_paused = Column(Boolean, default=False, nullable=False)
    suspended_at = Column(DateTime, nullable=True)
    recovered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    extra_metadata = Column(JSONType, nullable=True)

    # Relationships
    invoice = relationship("Invoice")
    subscription = relationship("Subscription")

    __table_args__ = (
        Index("idx_payment_retries_status_deadline", "status", "grace_deadline"),
    )

    def __repr__(self):
        return f"<PaymentRetry(id={self.id}, processor_invoice_id={self.processor_invoice_id}, status={self.status}, attempts={self.attempt_count})>"
