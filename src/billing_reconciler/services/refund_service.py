"""
Refund service

Reconciles processor refund events onto payments and issues admin-initiated
refunds through the processor control API.
"""
from typing import Optional, Dict, Any
from decimal import Decimal
from sqlalchemy.orm import Session
import logging

from ..db.ledger_store import LedgerStore
from ..db.models.audit import AuditOutcome
from ..db.models.payment import Payment, PaymentStatus, Refund, RefundStatus, RefundReason
from ..exceptions import RefundError, ProcessorError
from ..utils import minor_to_major, major_to_minor
from .audit_log_service import AuditAction
from .event_verifier import VerifiedEvent
from .notification_gateway import NotifierAuditorGateway
from .processor_client import ProcessorClient

logger = logging.getLogger(__name__)

REFUND_STATUSES = {s.value for s in RefundStatus}
REFUND_REASONS = {r.value for r in RefundReason}


def _refund_status(value: Optional[str]) -> str:
    return value if value in REFUND_STATUSES else RefundStatus.PENDING.value


class RefundService:
    """Service for refund reconciliation and refund requests"""

    def __init__(self, db: Session, processor: ProcessorClient, gateway: NotifierAuditorGateway):
        self.db = db
        self.store = LedgerStore(db)
        self.processor = processor
        self.gateway = gateway

    def handle_charge_refunded(self, event: VerifiedEvent) -> str:
        """
        charge.refunded - record refunds against the charged payment

        The processor reports `amount_refunded` cumulatively, so the stored
        total only ever grows regardless of delivery order.
        """
        data = event.payload
        payment_intent_id = data.get("payment_intent")
        payment = None
        if payment_intent_id:
            payment = self.store.find_unique(Payment, for_update=True, processor_payment_intent_id=payment_intent_id)
        if payment is None:
            logger.warning(f"Payment {payment_intent_id} not found for refunded charge {data.get('id')}")
            return "not_found"

        currency = (data.get("currency") or payment.currency).lower()
        for item in (data.get("refunds") or {}).get("data") or []:
            if not item.get("id"):
                continue
            values = {
                "status": _refund_status(item.get("status")),
                "receipt_number": item.get("receipt_number"),
                "failure_reason": item.get("failure_reason"),
            }
            reason = item.get("reason")
            self.store.upsert(
                Refund,
                {"processor_refund_id": item["id"]},
                create={
                    "payment_id": payment.id,
                    "amount": minor_to_major(item.get("amount"), currency),
                    "currency": currency,
                    "reason": reason if reason in REFUND_REASONS else RefundReason.REQUESTED_BY_CUSTOMER.value,
                    **values,
                },
                update=values,
            )

        refunded_total = minor_to_major(data.get("amount_refunded"), currency)
        if refunded_total > Decimal(payment.refunded_amount or 0):
            payment.refunded_amount = refunded_total
        payment.refunded = bool(data.get("refunded")) or payment.refundable_amount <= 0
        self.db.flush()

        self.gateway.audit(
            action=AuditAction.PAYMENT_REFUNDED,
            entity="Payment",
            entity_id=payment.processor_payment_intent_id,
            user_id=payment.customer.user_id,
            details={
                "charge_id": data.get("id"),
                "refunded_amount": str(payment.refunded_amount),
                "currency": payment.currency,
                "fully_refunded": payment.refunded,
            },
        )
        logger.info(f"Payment {payment.processor_payment_intent_id} refunded {payment.refunded_amount} {payment.currency}")
        return "refunded"

    def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: str = RefundReason.REQUESTED_BY_CUSTOMER.value,
        requested_by: Optional[str] = None,
    ) -> Refund:
        """
        Refund part or all of a succeeded payment

        Args:
            payment_intent_id: Processor payment intent to refund
            amount: Amount in major units (defaults to the remaining balance)
            reason: Refund reason code
            requested_by: Admin user who requested it

        Returns:
            Created Refund

        Raises:
            RefundError: payment unknown, not refundable, or amount invalid
            ProcessorError: the processor rejected the refund
        """
        payment = self.store.find_unique(Payment, for_update=True, processor_payment_intent_id=payment_intent_id)
        if payment is None:
            raise RefundError(f"Payment {payment_intent_id} not found")
        if payment.status != PaymentStatus.SUCCEEDED.value:
            raise RefundError(f"Payment {payment_intent_id} is {payment.status}, only succeeded payments can be refunded")
        if reason not in REFUND_REASONS:
            raise RefundError(f"Unknown refund reason: {reason}")

        refundable = payment.refundable_amount
        amount = refundable if amount is None else Decimal(amount)
        if amount <= 0:
            raise RefundError("Refund amount must be positive")
        if amount > refundable:
            raise RefundError(f"Refund amount {amount} exceeds refundable balance {refundable}")

        metadata = {"requested_by": requested_by} if requested_by else {}
        try:
            result: Dict[str, Any] = self.processor.create_refund(
                payment_intent_id,
                major_to_minor(amount, payment.currency),
                reason=reason,
                metadata=metadata,
            )
        except ProcessorError as e:
            self.db.rollback()
            self.gateway.audit_now(
                AuditAction.REFUND_REQUESTED,
                "Payment",
                entity_id=payment_intent_id,
                user_id=requested_by,
                outcome=AuditOutcome.FAILURE.value,
                details={"amount": str(amount), "error": str(e)},
            )
            raise

        refund = Refund(
            payment_id=payment.id,
            processor_refund_id=result.get("refund_id"),
            amount=amount,
            currency=payment.currency,
            reason=reason,
            status=_refund_status(result.get("status")),
            extra_metadata=metadata,
        )
        self.db.add(refund)
        payment.refunded_amount = Decimal(payment.refunded_amount or 0) + amount
        payment.refunded = payment.refundable_amount <= 0

        self.gateway.audit(
            action=AuditAction.REFUND_REQUESTED,
            entity="Payment",
            entity_id=payment_intent_id,
            user_id=requested_by,
            details={
                "refund_id": refund.processor_refund_id,
                "amount": str(amount),
                "currency": payment.currency,
                "reason": reason,
            },
        )
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.gateway.discard()
            raise
        self.gateway.dispatch()

        logger.info(f"Refund {refund.processor_refund_id} created for {payment_intent_id}: {amount} {payment.currency}")
        return refund


def get_refund_service(
    db: Session,
    gateway: NotifierAuditorGateway,
    processor: Optional[ProcessorClient] = None,
) -> RefundService:
    """Get refund service instance"""
    from ..config import config
    from .processor_client import get_processor_client

    return RefundService(db, processor=processor or get_processor_client(config), gateway=gateway)
