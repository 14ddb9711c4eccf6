"""
Customer and payment method models
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class PaymentMethodType(str, enum.Enum):
    """Payment method type enum"""
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    ACH = "ach"
    PAYPAL = "paypal"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"


class Customer(Base):
    """
    Local identity linked one-to-one with a processor customer

    Identifiers are immutable once created.
    """
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, unique=True, index=True)
    processor_customer_id = Column(String(100), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    default_payment_method_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="customer")
    invoices = relationship("Invoice", back_populates="customer")
    payments = relationship("Payment", back_populates="customer")
    payment_methods = relationship("PaymentMethod", back_populates="customer")

    def __repr__(self):
        return f"<Customer(id={self.id}, user_id={self.user_id}, processor_customer_id={self.processor_customer_id})>"


class PaymentMethod(Base):
    """Payment method attached to a customer on the processor side"""
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    processor_payment_method_id = Column(String(100), nullable=False, unique=True, index=True)
    type = Column(String(20), nullable=False, default=PaymentMethodType.CARD.value)

    # Card details (non-sensitive)
    card_brand = Column(String(20), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_exp_month = Column(Integer, nullable=True)
    card_exp_year = Column(Integer, nullable=True)

    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    extra_metadata = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    customer = relationship("Customer", back_populates="payment_methods")
