"""
Ledger models for the billing reconciliation engine
"""
from .customer import Customer, PaymentMethod, PaymentMethodType
from .subscription import Subscription, SubscriptionStatus
from .invoice import Invoice, InvoiceStatus
from .payment import Payment, PaymentStatus, Refund, RefundStatus, RefundReason
from .dispute import Dispute, DisputeStatus, DisputeEvidenceTask, EvidenceTaskStatus
from .dunning import PaymentRetry, PaymentRetryStatus
from .billing import ProcessedEvent
from .notification import Notification, NotificationType, NotificationPriority
from .audit import AuditLog, AuditOutcome

__all__ = [
    "Customer",
    "PaymentMethod",
    "PaymentMethodType",
    "Subscription",
    "SubscriptionStatus",
    "Invoice",
    "InvoiceStatus",
    "Payment",
    "PaymentStatus",
    "Refund",
    "RefundStatus",
    "RefundReason",
    "Dispute",
    "DisputeStatus",
    "DisputeEvidenceTask",
    "EvidenceTaskStatus",
    "PaymentRetry",
    "PaymentRetryStatus",
    "ProcessedEvent",
    "Notification",
    "NotificationType",
    "NotificationPriority",
    "AuditLog",
    "AuditOutcome",
]
