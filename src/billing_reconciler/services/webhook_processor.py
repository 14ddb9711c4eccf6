"""
Webhook processing pipeline

Idempotency check -> Router -> Reconciler -> mark processed -> commit ->
dispatch gateway effects. One event is one database transaction.
"""
import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models.audit import AuditOutcome
from ..exceptions import DuplicateEventError, EventProcessingError
from ..logging_config import event_context
from ..metrics import Timer, increment_counter
from .audit_log_service import AuditAction, AuditLogService
from .customer_reconciler import CustomerReconciler
from .dispute_service import DisputeService
from .dunning_service import RetryManager
from .event_router import EventRouter, build_event_router
from .event_verifier import VerifiedEvent
from .idempotency import IdempotencyLedger
from .invoice_reconciler import InvoiceReconciler
from .notification_gateway import DatabaseNotifier, Notifier, NotifierAuditorGateway
from .processor_client import ProcessorClient, get_processor_client
from .refund_service import RefundService
from .subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)


class ProcessingResult(BaseModel):
    """Outcome of handling one verified event"""
    event_id: str
    event_type: str
    duplicate: bool = False
    outcome: str


class WebhookProcessor:
    """
    Applies verified events to the ledger exactly once

    Handlers only flush; this class owns the commit. The processed-event
    record is inserted in the same transaction as the ledger writes.
    """

    def __init__(
        self,
        db: Session,
        router: EventRouter,
        gateway: NotifierAuditorGateway,
        ledger: Optional[IdempotencyLedger] = None,
    ):
        self.db = db
        self.router = router
        self.gateway = gateway
        self.ledger = ledger or IdempotencyLedger(db)

    def _duplicate(self, event: VerifiedEvent) -> ProcessingResult:
        record = self.ledger.get_record(event.id)
        increment_counter("webhook_events_total", labels={"event_type": event.type, "outcome": "duplicate"})
        logger.info(f"Duplicate event {event.id} ({event.type}), skipping")
        return ProcessingResult(
            event_id=event.id,
            event_type=event.type,
            duplicate=True,
            outcome=record.outcome if record else "duplicate",
        )

    def process(self, event: VerifiedEvent) -> ProcessingResult:
        """
        Handle one verified event

        Raises:
            EventProcessingError: the handler failed and nothing was committed
        """
        with event_context(event.id):
            if self.ledger.has_processed(event.id):
                return self._duplicate(event)

            logger.info(f"Processing {event.type} (created {event.created_at})")
            try:
                with Timer("webhook_processing_seconds", {"event_type": event.type}):
                    outcome = self.router.route(event)
                self.gateway.audit(
                    action=AuditAction.WEBHOOK_RECEIVED,
                    entity="WebhookEvent",
                    entity_id=event.id,
                    details={"event_type": event.type, "outcome": outcome, "live_mode": event.live_mode},
                )
                self.ledger.mark_processed(event.id, event.type, outcome, event_created_at=event.created_at)
                self.db.commit()
            except DuplicateEventError:
                self.db.rollback()
                self.gateway.discard()
                return self._duplicate(event)
            except IntegrityError as e:
                self.db.rollback()
                self.gateway.discard()
                if self.ledger.has_processed(event.id):
                    return self._duplicate(event)
                self._record_failure(event, e)
                raise EventProcessingError(event.id, event.type, e) from e
            except Exception as e:
                self.db.rollback()
                self.gateway.discard()
                self._record_failure(event, e)
                raise EventProcessingError(event.id, event.type, e) from e

            stats = self.gateway.dispatch()
            if stats["failed"]:
                logger.warning(f"{stats['failed']} notification/audit effects failed after commit")

            increment_counter("webhook_events_total", labels={"event_type": event.type, "outcome": outcome})
            logger.info(f"Processed {event.type}: {outcome}")
            return ProcessingResult(event_id=event.id, event_type=event.type, outcome=outcome)

    def _record_failure(self, event: VerifiedEvent, error: Exception):
        increment_counter("webhook_events_total", labels={"event_type": event.type, "outcome": "error"})
        logger.error(f"Processing {event.type} failed, rolled back: {error}", exc_info=True)
        self.gateway.audit_now(
            AuditAction.WEBHOOK_PROCESSING_FAILED,
            "WebhookEvent",
            entity_id=event.id,
            outcome=AuditOutcome.FAILURE.value,
            details={"event_type": event.type, "error": str(error), "error_type": type(error).__name__},
        )


def build_webhook_processor(
    db: Session,
    config=None,
    processor: Optional[ProcessorClient] = None,
    notifier: Optional[Notifier] = None,
) -> WebhookProcessor:
    """
    Wire the reconcilers, policies and gateway for one session

    Args:
        db: Request-scoped session
        config: Config object (defaults to the global config)
        processor: Processor control client override
        notifier: Notifier override

    Returns:
        WebhookProcessor instance
    """
    if config is None:
        from ..config import config

    gateway = NotifierAuditorGateway(notifier or DatabaseNotifier(db), AuditLogService(db))
    processor = processor or get_processor_client(config)

    retries = RetryManager(db, policy=config.retry_policy(), processor=processor, gateway=gateway)
    subscriptions = SubscriptionReconciler(db, gateway)
    router = build_event_router(
        customers=CustomerReconciler(db, gateway, processor=processor),
        subscriptions=subscriptions,
        invoices=InvoiceReconciler(db, gateway, subscriptions, retries),
        refunds=RefundService(db, processor=processor, gateway=gateway),
        disputes=DisputeService(db, policy=config.dispute_policy(), gateway=gateway),
    )
    return WebhookProcessor(db, router, gateway)
