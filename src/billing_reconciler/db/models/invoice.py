"""
Invoice model mirrored from processor invoices
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class InvoiceStatus(str, enum.Enum):
    """Invoice status enum"""
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"


class Invoice(Base):
    """
    Invoice upserted from processor events

    Never hard-deleted: the row history is the audit trail.
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    processor_invoice_id = Column(String(100), nullable=False, unique=True, index=True)

    # Relationships
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    # Amounts (major currency units)
    subtotal = Column(Numeric(12, 2), default=0, nullable=False)
    tax = Column(Numeric(12, 2), default=0, nullable=False)
    total = Column(Numeric(12, 2), default=0, nullable=False)
    amount_paid = Column(Numeric(12, 2), default=0, nullable=False)
    amount_due = Column(Numeric(12, 2), default=0, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)

    # Status
    status = Column(String(20), default=InvoiceStatus.DRAFT.value, nullable=False, index=True)

    # Display
    number = Column(String(50), nullable=True)
    description = Column(String(500), nullable=True)
    hosted_invoice_url = Column(String(500), nullable=True)
    pdf_url = Column(String(500), nullable=True)

    # Provider references
    processor_payment_intent_id = Column(String(100), nullable=True, index=True)

    # Timestamps
    paid_at = Column(DateTime, nullable=True)
    last_event_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    extra_metadata = Column(JSONType, nullable=True)

    # Relationships
    customer = relationship("Customer", back_populates="invoices")
    subscription = relationship("Subscription", back_populates="invoices")

    __table_args__ = (
        Index("idx_invoices_customer_status", "customer_id", "status"),
    )

    def __repr__(self):
        return f"<Invoice(id={self.id}, processor_invoice_id={self.processor_invoice_id}, status={self.status}, total={self.total})>"
