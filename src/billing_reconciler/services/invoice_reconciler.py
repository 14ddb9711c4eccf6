"""
Invoice/Payment Reconciler

Upserts invoice outcomes keyed by processor invoice id and updates existing
payments keyed by processor payment-intent id. Amounts arrive in minor
units and are converted to major units here, once, at persistence.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..db.ledger_store import LedgerStore
from ..db.models.audit import AuditOutcome
from ..db.models.customer import Customer
from ..db.models.dunning import PaymentRetryStatus
from ..db.models.invoice import Invoice, InvoiceStatus
from ..db.models.notification import NotificationType, NotificationPriority
from ..db.models.payment import Payment, PaymentStatus
from ..db.models.subscription import Subscription
from ..utils import from_timestamp, minor_to_major
from .audit_log_service import AuditAction
from .dunning_service import RetryManager
from .event_verifier import VerifiedEvent
from .notification_gateway import NotifierAuditorGateway
from .subscription_reconciler import SubscriptionReconciler, is_stale

logger = logging.getLogger(__name__)


def invoice_subscription_id(data: Dict[str, Any]) -> Optional[str]:
    """Processor subscription id an invoice bills for, across API versions"""
    if data.get("subscription"):
        return data["subscription"]
    parent = data.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")


class InvoiceReconciler:
    """Reconciles invoice and payment-intent events into the ledger"""

    def __init__(
        self,
        db: Session,
        gateway: NotifierAuditorGateway,
        subscriptions: SubscriptionReconciler,
        retries: RetryManager,
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.gateway = gateway
        self.subscriptions = subscriptions
        self.retries = retries

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def _upsert_invoice(
        self,
        event: VerifiedEvent,
        customer: Customer,
        fields: Dict[str, Any],
    ) -> Tuple[Invoice, bool, bool]:
        """Apply-then-compare upsert; returns (invoice, created, applied)"""
        data = event.payload
        currency = (data.get("currency") or "usd").lower()

        subscription = None
        processor_subscription_id = invoice_subscription_id(data)
        if processor_subscription_id:
            subscription = self.store.find_unique(Subscription, processor_subscription_id=processor_subscription_id)

        values = {
            "subscription_id": subscription.id if subscription else None,
            "subtotal": minor_to_major(data.get("subtotal"), currency),
            "tax": minor_to_major(data.get("tax"), currency),
            "total": minor_to_major(data.get("total"), currency),
            "amount_paid": minor_to_major(data.get("amount_paid"), currency),
            "amount_due": minor_to_major(data.get("amount_due"), currency),
            "currency": currency,
            "number": data.get("number"),
            "description": data.get("description"),
            "hosted_invoice_url": data.get("hosted_invoice_url"),
            "pdf_url": data.get("invoice_pdf"),
            "processor_payment_intent_id": data.get("payment_intent"),
            **fields,
        }
        applied = {"value": False}

        def _apply(invoice: Invoice):
            if is_stale(invoice.last_event_at, event.created_at):
                return
            for column, value in values.items():
                setattr(invoice, column, value)
            invoice.last_event_at = event.created_at
            applied["value"] = True

        invoice, created = self.store.upsert(
            Invoice,
            {"processor_invoice_id": data["id"]},
            create={"customer_id": customer.id, "last_event_at": event.created_at, **values},
            update=_apply,
        )
        return invoice, created, created or applied["value"]

    def _find_customer(self, data: Dict[str, Any]) -> Optional[Customer]:
        processor_customer_id = data.get("customer")
        if not processor_customer_id:
            return None
        return self.store.find_unique(Customer, processor_customer_id=processor_customer_id)

    def handle_invoice_payment_succeeded(self, event: VerifiedEvent) -> str:
        """invoice.payment_succeeded - mark PAID and renew the subscription"""
        data = event.payload
        customer = self._find_customer(data)
        if customer is None:
            logger.warning(f"Customer {data.get('customer')} not found for invoice {data.get('id')}")
            return "not_found"

        paid_at = from_timestamp((data.get("status_transitions") or {}).get("paid_at")) or event.created_at
        invoice, created, applied = self._upsert_invoice(
            event,
            customer,
            {"status": InvoiceStatus.PAID.value, "paid_at": paid_at},
        )
        if not applied:
            logger.info(f"Skipping stale payment success for invoice {invoice.processor_invoice_id}")
            return "stale"

        self.gateway.audit(
            action=AuditAction.INVOICE_PAYMENT_SUCCEEDED,
            entity="Invoice",
            entity_id=invoice.processor_invoice_id,
            user_id=customer.user_id,
            details={
                "amount_paid": str(invoice.amount_paid),
                "currency": invoice.currency,
                "number": invoice.number,
            },
        )
        logger.info(f"Invoice {invoice.processor_invoice_id} paid: {invoice.amount_paid} {invoice.currency}")

        self.retries.resolve(invoice.processor_invoice_id, now=event.created_at)

        processor_subscription_id = invoice_subscription_id(data)
        if processor_subscription_id:
            self.subscriptions.renew(processor_subscription_id, data, event)
        return "paid"

    def handle_invoice_payment_failed(self, event: VerifiedEvent) -> str:
        """invoice.payment_failed - mark OPEN and start/continue retry tracking"""
        data = event.payload
        customer = self._find_customer(data)
        if customer is None:
            logger.warning(f"Customer {data.get('customer')} not found for failed invoice {data.get('id')}")
            return "not_found"

        invoice, created, applied = self._upsert_invoice(
            event,
            customer,
            {"status": InvoiceStatus.OPEN.value},
        )
        if not applied:
            logger.info(f"Skipping stale payment failure for invoice {invoice.processor_invoice_id}")
            return "stale"

        self.gateway.audit(
            action=AuditAction.INVOICE_PAYMENT_FAILED,
            entity="Invoice",
            entity_id=invoice.processor_invoice_id,
            user_id=customer.user_id,
            outcome=AuditOutcome.FAILURE.value,
            details={
                "amount_due": str(invoice.amount_due),
                "currency": invoice.currency,
                "attempt_count": data.get("attempt_count"),
            },
        )
        logger.warning(f"Invoice {invoice.processor_invoice_id} payment failed: {invoice.amount_due} {invoice.currency} due")

        retry = self.retries.record_failure(invoice, failed_at=event.created_at)
        return "suspended" if retry.status == PaymentRetryStatus.SUSPENDED.value else "payment_failed"

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    def _update_payment(self, event: VerifiedEvent, patch: Dict[str, Any]) -> Tuple[Optional[Payment], bool]:
        """Patch an existing payment unless a newer event already applied"""
        applied = {"value": False}

        def _apply(payment: Payment):
            if is_stale(payment.last_event_at, event.created_at):
                return
            for column, value in patch.items():
                setattr(payment, column, value)
            payment.last_event_at = event.created_at
            applied["value"] = True

        payment = self.store.update(
            Payment,
            {"processor_payment_intent_id": event.payload["id"]},
            _apply,
        )
        return payment, applied["value"]

    @staticmethod
    def _receipt_url(data: Dict[str, Any]) -> Optional[str]:
        charges = (data.get("charges") or {}).get("data") or []
        if charges:
            return charges[0].get("receipt_url")
        latest_charge = data.get("latest_charge")
        if isinstance(latest_charge, dict):
            return latest_charge.get("receipt_url")
        return None

    def handle_payment_intent_succeeded(self, event: VerifiedEvent) -> str:
        """payment_intent.succeeded"""
        data = event.payload
        payment, applied = self._update_payment(event, {
            "status": PaymentStatus.SUCCEEDED.value,
            "processed_at": event.created_at,
            "receipt_url": self._receipt_url(data),
            "failure_code": None,
            "failure_message": None,
        })
        if payment is None:
            logger.warning(f"Payment {data.get('id')} not found; created outside this system, ignoring")
            return "not_found"
        if not applied:
            logger.info(f"Skipping stale success for payment {payment.processor_payment_intent_id}")
            return "stale"

        user_id = payment.customer.user_id
        self.gateway.audit(
            action=AuditAction.PAYMENT_INTENT_SUCCEEDED,
            entity="Payment",
            entity_id=payment.processor_payment_intent_id,
            user_id=user_id,
            details={
                "amount": str(payment.amount),
                "currency": payment.currency,
                "order_reference": payment.order_reference,
            },
        )
        self.gateway.notify(
            user_id=user_id,
            title="Payment Confirmed",
            message=f"Your payment of {payment.amount} {payment.currency.upper()} has been processed successfully.",
            type=NotificationType.BILLING.value,
            priority=NotificationPriority.NORMAL.value,
            action_url="/billing/history",
            metadata={"payment_intent_id": payment.processor_payment_intent_id},
        )
        logger.info(f"Payment {payment.processor_payment_intent_id} succeeded")
        return "succeeded"

    def handle_payment_intent_failed(self, event: VerifiedEvent) -> str:
        """payment_intent.payment_failed"""
        data = event.payload
        error = data.get("last_payment_error") or {}
        payment, applied = self._update_payment(event, {
            "status": PaymentStatus.FAILED.value,
            "failure_code": error.get("code") or error.get("decline_code"),
            "failure_message": error.get("message"),
        })
        if payment is None:
            logger.warning(f"Payment {data.get('id')} not found; created outside this system, ignoring")
            return "not_found"
        if not applied:
            logger.info(f"Skipping stale failure for payment {payment.processor_payment_intent_id}")
            return "stale"

        user_id = payment.customer.user_id
        self.gateway.audit(
            action=AuditAction.PAYMENT_INTENT_FAILED,
            entity="Payment",
            entity_id=payment.processor_payment_intent_id,
            user_id=user_id,
            outcome=AuditOutcome.FAILURE.value,
            details={
                "failure_code": payment.failure_code,
                "failure_message": payment.failure_message,
            },
        )
        self.gateway.notify(
            user_id=user_id,
            title="Payment Failed",
            message=(
                f"Your payment of {payment.amount} {payment.currency.upper()} could not be processed. "
                f"{payment.failure_message or 'Please try a different payment method.'}"
            ),
            type=NotificationType.BILLING.value,
            priority=NotificationPriority.HIGH.value,
            action_url="/billing/payment-methods",
            metadata={"payment_intent_id": payment.processor_payment_intent_id},
        )
        logger.warning(f"Payment {payment.processor_payment_intent_id} failed: {payment.failure_code}")
        return "failed"
