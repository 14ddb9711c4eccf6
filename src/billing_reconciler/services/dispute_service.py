"""
Dispute Workflow Engine

Handles chargeback disputes opened against payments:
- Records the dispute against the payment
- Alerts administrators
- Starts an auto-response or evidence collection
- Escalates high-value disputes to senior administrators

Each workflow step is isolated: one failing step never stops the others.
"""
from typing import Optional, Dict, Any, Callable
from datetime import timedelta
from decimal import Decimal
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from ..db.ledger_store import LedgerStore
from ..db.models.dispute import (
    Dispute,
    DisputeStatus,
    DisputeEvidenceTask,
    EvidenceTaskStatus,
    CLOSED_DISPUTE_STATUSES,
)
from ..db.models.notification import NotificationType, NotificationPriority
from ..db.models.payment import Payment
from ..policies import DisputePolicy
from ..utils import from_timestamp, minor_to_major, utcnow
from .audit_log_service import AuditAction
from .event_verifier import VerifiedEvent
from .notification_gateway import NotifierAuditorGateway
from .subscription_reconciler import is_stale

logger = logging.getLogger(__name__)

DISPUTE_STATUSES = {s.value for s in DisputeStatus}

STEP_SUCCEEDED = "succeeded"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"


class DisputeService:
    """Service for dispute reconciliation and the dispute workflow"""

    def __init__(self, db: Session, policy: DisputePolicy, gateway: NotifierAuditorGateway):
        self.db = db
        self.store = LedgerStore(db)
        self.policy = policy
        self.gateway = gateway

    def is_escalated(self, amount: Decimal) -> bool:
        """High-value check; the threshold itself escalates"""
        return amount >= self.policy.escalation_threshold_amount

    def _run_step(self, name: str, step: Callable[[], Any], results: Dict[str, str]) -> Any:
        """Run one workflow step in a SAVEPOINT, recording its result"""
        try:
            with self.db.begin_nested():
                value = step()
                self.db.flush()
            results[name] = STEP_SUCCEEDED
            return value
        except Exception as e:
            results[name] = STEP_FAILED
            logger.error(f"Dispute workflow step '{name}' failed: {e}", exc_info=True)
            return None

    def handle_dispute_created(self, event: VerifiedEvent) -> str:
        """
        charge.dispute.created

        Returns:
            "escalated" or "opened"; "not_found" when the payment is unknown,
            "exists" when the dispute was already recorded
        """
        data = event.payload
        payment_intent_id = data.get("payment_intent")
        payment = None
        if payment_intent_id:
            payment = self.store.find_unique(Payment, for_update=True, processor_payment_intent_id=payment_intent_id)
        if payment is None:
            logger.warning(f"Payment {payment_intent_id} not found for dispute {data.get('id')}")
            return "not_found"

        if self.store.find_unique(Dispute, processor_dispute_id=data["id"]) is not None:
            logger.info(f"Dispute {data['id']} already recorded, applying as a status update")
            self.handle_dispute_updated(event)
            return "exists"

        currency = (data.get("currency") or payment.currency).lower()
        amount = minor_to_major(data.get("amount"), currency)
        escalated = self.is_escalated(amount)
        results: Dict[str, str] = {}

        logger.warning(
            f"Dispute {data['id']} opened on payment {payment.processor_payment_intent_id}: "
            f"{amount} {currency} ({data.get('reason')}){' - ESCALATED' if escalated else ''}"
        )

        dispute = self._run_step(
            "persist",
            lambda: self._persist_dispute(event, payment, amount, currency, escalated),
            results,
        )
        notified = self._run_step("notify_admins", lambda: self._notify_admins(data, payment, amount, currency), results)
        if notified == 0:
            results["notify_admins"] = STEP_SKIPPED

        if escalated or not self.policy.auto_response_enabled:
            results["auto_response"] = STEP_SKIPPED
        else:
            self._run_step("auto_response", lambda: self._start_auto_response(data, payment, amount), results)

        if not self.policy.document_collection_enabled or dispute is None:
            results["document_collection"] = STEP_SKIPPED
        else:
            self._run_step("document_collection", lambda: self._start_document_collection(dispute), results)

        if escalated:
            notified = self._run_step("escalation", lambda: self._escalate(data, payment, amount, currency), results)
            if notified == 0:
                results["escalation"] = STEP_SKIPPED
        else:
            results["escalation"] = STEP_SKIPPED

        self.gateway.audit(
            action=AuditAction.DISPUTE_WORKFLOW_INITIATED,
            entity="Dispute",
            entity_id=data["id"],
            user_id=payment.customer.user_id,
            details={
                "payment_intent_id": payment.processor_payment_intent_id,
                "amount": str(amount),
                "escalated": escalated,
                "steps": results,
            },
        )
        return "escalated" if escalated else "opened"

    def _persist_dispute(
        self,
        event: VerifiedEvent,
        payment: Payment,
        amount: Decimal,
        currency: str,
        escalated: bool,
    ) -> Dispute:
        data = event.payload
        status = data.get("status")
        card_details = (data.get("payment_method_details") or {}).get("card") or {}

        dispute, _ = self.store.upsert(
            Dispute,
            {"processor_dispute_id": data["id"]},
            create={
                "payment_id": payment.id,
                "processor_charge_id": data.get("charge"),
                "amount": amount,
                "currency": currency,
                "reason": data.get("reason"),
                "network_reason_code": card_details.get("network_reason_code"),
                "status": status if status in DISPUTE_STATUSES else DisputeStatus.NEEDS_RESPONSE.value,
                "escalated": escalated,
                "evidence_due_by": from_timestamp((data.get("evidence_details") or {}).get("due_by")),
                "last_event_at": event.created_at,
                "extra_metadata": data.get("metadata") or {},
            },
        )

        # Reassign so the JSON column is flagged dirty
        metadata = dict(payment.extra_metadata or {})
        metadata["disputes"] = list(metadata.get("disputes") or []) + [{
            "dispute_id": dispute.processor_dispute_id,
            "amount": str(amount),
            "reason": dispute.reason,
            "escalated": escalated,
            "opened_at": event.created_at.isoformat(),
        }]
        payment.extra_metadata = metadata

        self.gateway.audit(
            action=AuditAction.CHARGE_DISPUTE_CREATED,
            entity="Dispute",
            entity_id=dispute.processor_dispute_id,
            user_id=payment.customer.user_id,
            details={
                "payment_intent_id": payment.processor_payment_intent_id,
                "charge_id": dispute.processor_charge_id,
                "amount": str(amount),
                "currency": currency,
                "reason": dispute.reason,
                "status": dispute.status,
            },
        )
        return dispute

    def _notify_admins(self, data: Dict[str, Any], payment: Payment, amount: Decimal, currency: str) -> int:
        return self.gateway.notify_many(
            self.policy.admin_user_ids,
            title="Payment Dispute Created",
            message=(
                f"A dispute of {amount} {currency.upper()} was opened on payment "
                f"{payment.processor_payment_intent_id}. Reason: {data.get('reason') or 'unspecified'}."
            ),
            type=NotificationType.ADMIN.value,
            priority=NotificationPriority.URGENT.value,
            action_url=f"/admin/disputes/{data['id']}",
            metadata={"dispute_id": data["id"], "payment_intent_id": payment.processor_payment_intent_id},
        )

    def _start_auto_response(self, data: Dict[str, Any], payment: Payment, amount: Decimal):
        # Evidence is submitted by an operator; this only records the decision
        self.gateway.audit(
            action=AuditAction.DISPUTE_AUTO_RESPONSE_INITIATED,
            entity="Dispute",
            entity_id=data["id"],
            user_id=payment.customer.user_id,
            details={"amount": str(amount), "reason": data.get("reason")},
        )

    def _start_document_collection(self, dispute: Dispute):
        due_date = utcnow() + timedelta(days=self.policy.evidence_collection_days)
        for category in self.policy.evidence_categories:
            self.store.upsert(
                DisputeEvidenceTask,
                {"dispute_id": dispute.id, "category": category},
                create={
                    "status": EvidenceTaskStatus.PENDING_COLLECTION.value,
                    "due_date": due_date,
                },
            )

        self.gateway.audit(
            action=AuditAction.DISPUTE_DOCUMENT_COLLECTION_STARTED,
            entity="Dispute",
            entity_id=dispute.processor_dispute_id,
            details={
                "categories": list(self.policy.evidence_categories),
                "due_date": due_date.isoformat(),
            },
        )

    def _escalate(self, data: Dict[str, Any], payment: Payment, amount: Decimal, currency: str) -> int:
        self.gateway.audit(
            action=AuditAction.HIGH_VALUE_DISPUTE_ESCALATED,
            entity="Dispute",
            entity_id=data["id"],
            user_id=payment.customer.user_id,
            details={
                "amount": str(amount),
                "threshold": str(self.policy.escalation_threshold_amount),
            },
        )
        return self.gateway.notify_many(
            self.policy.senior_admin_user_ids,
            title="HIGH-VALUE DISPUTE ESCALATION",
            message=(
                f"Dispute {data['id']} for {amount} {currency.upper()} exceeds the "
                f"escalation threshold of {self.policy.escalation_threshold_amount}. Immediate review required."
            ),
            type=NotificationType.ADMIN.value,
            priority=NotificationPriority.URGENT.value,
            action_url=f"/admin/disputes/{data['id']}",
            metadata={"dispute_id": data["id"], "escalated": True},
        )

    def handle_dispute_updated(self, event: VerifiedEvent) -> str:
        """charge.dispute.updated / charge.dispute.closed"""
        data = event.payload
        previous = {}

        def _apply(dispute: Dispute):
            if is_stale(dispute.last_event_at, event.created_at):
                return
            previous["status"] = dispute.status
            status = data.get("status")
            if status in DISPUTE_STATUSES:
                dispute.status = status
            else:
                logger.warning(f"Unknown dispute status '{status}' for {dispute.processor_dispute_id}")
            due_by = from_timestamp((data.get("evidence_details") or {}).get("due_by"))
            if due_by:
                dispute.evidence_due_by = due_by
            if dispute.status in CLOSED_DISPUTE_STATUSES and dispute.closed_at is None:
                dispute.closed_at = event.created_at
            dispute.last_event_at = event.created_at

        dispute = self.store.update(Dispute, {"processor_dispute_id": data["id"]}, _apply)
        if dispute is None:
            logger.warning(f"Dispute {data.get('id')} not found for {event.type}")
            return "not_found"
        if not previous:
            logger.info(f"Skipping stale {event.type} for dispute {dispute.processor_dispute_id}")
            return "stale"

        self.gateway.audit(
            action=AuditAction.DISPUTE_STATUS_UPDATED,
            entity="Dispute",
            entity_id=dispute.processor_dispute_id,
            user_id=dispute.payment.customer.user_id,
            details={
                "previous_status": previous["status"],
                "status": dispute.status,
                "escalated": dispute.escalated,
                "closed_at": dispute.closed_at.isoformat() if dispute.closed_at else None,
            },
        )
        logger.info(f"Dispute {dispute.processor_dispute_id}: {previous['status']} -> {dispute.status}")
        return "closed" if dispute.status in CLOSED_DISPUTE_STATUSES else "updated"

    def get_dispute_stats(self) -> Dict[str, Any]:
        """
        Get dispute statistics

        Returns:
            Totals, counts by status, escalations, open evidence tasks and win rate
        """
        by_status = dict(
            self.db.query(Dispute.status, func.count(Dispute.id)).group_by(Dispute.status).all()
        )
        total_amount = self.db.query(func.coalesce(func.sum(Dispute.amount), 0)).scalar()

        stats = {
            "total_disputes": sum(by_status.values()),
            "total_amount": float(total_amount or 0),
            "by_status": by_status,
            "escalated": self.store.count(Dispute, escalated=True),
            "open_evidence_tasks": self.store.count(
                DisputeEvidenceTask, status=EvidenceTaskStatus.PENDING_COLLECTION.value
            ),
            "win_rate": 0,
        }

        won = by_status.get(DisputeStatus.WON.value, 0)
        lost = by_status.get(DisputeStatus.LOST.value, 0)
        if won + lost > 0:
            stats["win_rate"] = (won / (won + lost)) * 100

        return stats


def get_dispute_service(
    db: Session,
    gateway: NotifierAuditorGateway,
    policy: Optional[DisputePolicy] = None,
) -> DisputeService:
    """Get dispute service instance"""
    from ..config import config

    return DisputeService(db, policy=policy or config.dispute_policy(), gateway=gateway)
