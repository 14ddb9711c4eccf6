"""
Audit Log Service
Append-only audit trail of every reconciliation transition
"""
import logging
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from ..db.models.audit import AuditLog, AuditOutcome
from ..utils import utcnow

logger = logging.getLogger(__name__)


class AuditAction:
    """Audit action types (enum-like constants)"""
    # Webhook intake
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"
    WEBHOOK_REJECTED = "WEBHOOK_REJECTED"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_PROCESSING_FAILED"

    # Customers
    CUSTOMER_CREATED = "CUSTOMER_CREATED"
    PAYMENT_METHOD_ATTACHED = "PAYMENT_METHOD_ATTACHED"
    SETUP_INTENT_SUCCEEDED = "SETUP_INTENT_SUCCEEDED"

    # Subscriptions
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_SUSPENDED_FOR_NONPAYMENT = "SUBSCRIPTION_SUSPENDED_FOR_NONPAYMENT"
    PENDING_SUBSCRIPTION_UPDATED = "PENDING_SUBSCRIPTION_UPDATED"
    PENDING_SUBSCRIPTION_UPDATE_FAILED = "PENDING_SUBSCRIPTION_UPDATE_FAILED"

    # Invoices & payments
    INVOICE_PAYMENT_SUCCEEDED = "INVOICE_PAYMENT_SUCCEEDED"
    INVOICE_PAYMENT_FAILED = "INVOICE_PAYMENT_FAILED"
    PAYMENT_INTENT_SUCCEEDED = "PAYMENT_INTENT_SUCCEEDED"
    PAYMENT_INTENT_FAILED = "PAYMENT_INTENT_FAILED"
    PAYMENT_RECOVERED = "PAYMENT_RECOVERED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    REFUND_REQUESTED = "REFUND_REQUESTED"

    # Disputes
    CHARGE_DISPUTE_CREATED = "CHARGE_DISPUTE_CREATED"
    DISPUTE_AUTO_RESPONSE_INITIATED = "DISPUTE_AUTO_RESPONSE_INITIATED"
    DISPUTE_DOCUMENT_COLLECTION_STARTED = "DISPUTE_DOCUMENT_COLLECTION_STARTED"
    HIGH_VALUE_DISPUTE_ESCALATED = "HIGH_VALUE_DISPUTE_ESCALATED"
    DISPUTE_WORKFLOW_INITIATED = "DISPUTE_WORKFLOW_INITIATED"
    DISPUTE_STATUS_UPDATED = "DISPUTE_STATUS_UPDATED"


class AuditLogService:
    """
    Service for creating and querying audit logs

    Each entry is committed on its own so a failed audit never takes other
    writes down with it.
    """

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: str,
        entity: str,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        outcome: str = AuditOutcome.SUCCESS.value,
        user_id: Optional[str] = None,
    ) -> AuditLog:
        """
        Create an audit log entry

        Args:
            action: Action type (use AuditAction constants)
            entity: Entity kind (Subscription, Invoice, Payment, Dispute, ...)
            entity_id: Processor or local identifier of the entity
            details: Additional context (no card data)
            outcome: success or failure
            user_id: Internal user the entry relates to, if any

        Returns:
            Created AuditLog instance
        """
        audit_entry = AuditLog(
            user_id=user_id,
            action=action,
            entity=entity,
            entity_id=str(entity_id) if entity_id is not None else None,
            outcome=outcome,
            details=details or {},
            created_at=utcnow(),
        )

        try:
            self.db.add(audit_entry)
            self.db.commit()
            self.db.refresh(audit_entry)
            logger.debug(f"Audit log created: {action} on {entity} {entity_id} ({outcome})")
            return audit_entry
        except Exception as e:
            logger.error(f"Failed to create audit log: {e}", exc_info=True)
            self.db.rollback()
            raise

    def get_entity_audit_log(self, entity: str, entity_id: str, limit: int = 100) -> List[AuditLog]:
        """Get audit entries for one entity, newest first"""
        return self.db.query(AuditLog).filter(
            AuditLog.entity == entity,
            AuditLog.entity_id == str(entity_id),
        ).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
