"""
Subscription model
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum (values match the processor's lowercase names)"""
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


class Subscription(Base):
    """
    Customer subscription mirrored from the processor

    Status changes only through reconciliation events or the retry manager.
    `last_event_at` holds the processor timestamp of the last applied event.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    processor_subscription_id = Column(String(100), nullable=False, unique=True, index=True)
    processor_price_id = Column(String(100), nullable=True)
    status = Column(String(30), nullable=False, default=SubscriptionStatus.INCOMPLETE.value, index=True)

    # Plan
    plan_name = Column(String(100), nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    interval = Column(String(10), nullable=True)  # day, week, month, year
    interval_count = Column(Integer, default=1, nullable=False)

    # Periods
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    cancel_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    last_event_at = Column(DateTime, nullable=True)
    extra_metadata = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    customer = relationship("Customer", back_populates="subscriptions")
    invoices = relationship("Invoice", back_populates="subscription")

    __table_args__ = (
        Index("idx_subscriptions_customer_status", "customer_id", "status"),
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, processor_subscription_id={self.processor_subscription_id}, status={self.status})>"
