"""
Payment and refund models
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from decimal import Decimal
import enum

from ..base import Base, JSONType


class PaymentStatus(str, enum.Enum):
    """Payment intent status enum"""
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefundStatus(str, enum.Enum):
    """Refund status enum"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class RefundReason(str, enum.Enum):
    """Refund reason enum"""
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    EXPIRED_UNCAPTURED_CHARGE = "expired_uncaptured_charge"


class Payment(Base):
    """
    One-off payment backed by a processor payment intent

    Created at checkout by a separate collaborator; the reconciler only
    updates existing rows.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    order_reference = Column(String(100), nullable=True, index=True)  # appointment / order id
    processor_payment_intent_id = Column(String(100), nullable=False, unique=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String(30), default=PaymentStatus.REQUIRES_PAYMENT_METHOD.value, nullable=False, index=True)

    receipt_url = Column(String(500), nullable=True)
    failure_code = Column(String(50), nullable=True)
    failure_message = Column(String(500), nullable=True)

    refunded = Column(Boolean, default=False, nullable=False)
    refunded_amount = Column(Numeric(12, 2), default=0, nullable=False)

    processed_at = Column(DateTime, nullable=True)
    last_event_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    extra_metadata = Column(JSONType, nullable=True)

    # Relationships
    customer = relationship("Customer", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment", order_by="Refund.id")
    disputes = relationship("Dispute", back_populates="payment", order_by="Dispute.id")

    @property
    def refundable_amount(self) -> Decimal:
        """Amount still available for refund"""
        return Decimal(self.amount or 0) - Decimal(self.refunded_amount or 0)

    def __repr__(self):
        return f"<Payment(id={self.id}, processor_payment_intent_id={self.processor_payment_intent_id}, status={self.status}, amount={self.amount})>"


class Refund(Base):
    """Refund issued against a payment"""
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    processor_refund_id = Column(String(100), nullable=True, unique=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    reason = Column(String(50), default=RefundReason.REQUESTED_BY_CUSTOMER.value, nullable=False)
    status = Column(String(20), default=RefundStatus.PENDING.value, nullable=False, index=True)
    receipt_number = Column(String(100), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    extra_metadata = Column(JSONType, nullable=True)

    payment = relationship("Payment", back_populates="refunds")

    __table_args__ = (
        Index("idx_refunds_payment_status", "payment_id", "status"),
    )

    def __repr__(self):
        return f"<Refund(id={self.id}, payment_id={self.payment_id}, amount={self.amount}, status={self.status})>"
