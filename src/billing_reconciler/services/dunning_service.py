"""
Retry & Grace-Period Manager for failed invoice payments

State per failing invoice:
- FAILED: user notified, processor keeps retrying on its own schedule
- SUSPENDED: grace period elapsed, subscription PAST_DUE, collection paused
- RECOVERED: a later payment succeeded
"""
from typing import Optional, Dict
from datetime import datetime, timedelta
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
import logging

from ..db.ledger_store import LedgerStore
from ..db.models.dunning import PaymentRetry, PaymentRetryStatus
from ..db.models.invoice import Invoice
from ..db.models.subscription import SubscriptionStatus
from ..db.models.notification import NotificationType, NotificationPriority
from ..db.models.audit import AuditOutcome
from ..policies import RetryPolicy
from ..utils import utcnow
from .audit_log_service import AuditAction
from .notification_gateway import NotifierAuditorGateway
from .processor_client import ProcessorClient

logger = logging.getLogger(__name__)


class RetryManager:
    """
    Tracks failing invoices and suspends subscriptions after the grace period

    The grace deadline is fixed at the first failure of an invoice:
    `first_failed_at + grace_period_hours`. Reaching it (inclusive) suspends.
    """

    def __init__(
        self,
        db: Session,
        policy: RetryPolicy,
        processor: ProcessorClient,
        gateway: NotifierAuditorGateway,
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.policy = policy
        self.processor = processor
        self.gateway = gateway

    def record_failure(
        self,
        invoice: Invoice,
        failed_at: datetime,
        now: Optional[datetime] = None,
        failure_message: Optional[str] = None,
    ) -> PaymentRetry:
        """
        Record a failed payment attempt for an invoice

        Args:
            invoice: The failing invoice (already upserted)
            failed_at: Processor timestamp of the failure
            now: Evaluation time for the grace check (defaults to utcnow)
            failure_message: Processor decline message, if any

        Returns:
            The PaymentRetry row
        """
        grace_deadline = failed_at + timedelta(hours=self.policy.grace_period_hours)

        def _bump(retry: PaymentRetry):
            if retry.status == PaymentRetryStatus.RECOVERED.value:
                # Invoice failed again after recovering: start a fresh grace window
                retry.status = PaymentRetryStatus.FAILED.value
                retry.attempt_count = 0
                retry.first_failed_at = failed_at
                retry.grace_deadline = grace_deadline
                retry.recovered_at = None
            retry.attempt_count += 1
            retry.last_failed_at = max(retry.last_failed_at, failed_at)
            retry.amount_due = invoice.amount_due

        retry, created = self.store.upsert(
            PaymentRetry,
            {"processor_invoice_id": invoice.processor_invoice_id},
            create={
                "invoice_id": invoice.id,
                "subscription_id": invoice.subscription_id,
                "status": PaymentRetryStatus.FAILED.value,
                "amount_due": invoice.amount_due,
                "currency": invoice.currency,
                "attempt_count": 1,
                "first_failed_at": failed_at,
                "last_failed_at": failed_at,
                "grace_deadline": grace_deadline,
            },
            update=_bump,
        )
        retry.next_retry_at = self._next_retry_at(retry)
        self.db.flush()

        if created:
            logger.info(
                f"Started retry tracking for invoice {invoice.processor_invoice_id}, "
                f"grace deadline {retry.grace_deadline}"
            )
        else:
            logger.info(
                f"Invoice {invoice.processor_invoice_id} failed again "
                f"(attempt {retry.attempt_count}/{self.policy.max_retry_attempts})"
            )

        if retry.status == PaymentRetryStatus.FAILED.value:
            self._notify_failure(invoice, retry, failure_message)

        self.check_expiry(retry, now or utcnow())
        return retry

    def _next_retry_at(self, retry: PaymentRetry) -> Optional[datetime]:
        """Next processor retry eligibility with exponential backoff; None once exhausted"""
        if retry.attempt_count >= self.policy.max_retry_attempts:
            return None
        delay_hours = self.policy.base_delay_hours * (self.policy.backoff_multiplier ** (retry.attempt_count - 1))
        return retry.last_failed_at + timedelta(hours=delay_hours)

    def _notify_failure(self, invoice: Invoice, retry: PaymentRetry, failure_message: Optional[str]):
        customer = invoice.customer
        if customer is None:
            return

        message = (
            f"We couldn't process your payment of {invoice.amount_due} {invoice.currency.upper()}. "
            f"Please update your payment method before {retry.grace_deadline:%Y-%m-%d %H:%M} UTC "
            f"to avoid interruption of your subscription."
        )
        if failure_message:
            message += f" Reason: {failure_message}"

        self.gateway.notify(
            user_id=customer.user_id,
            title="Payment Failed",
            message=message,
            type=NotificationType.BILLING.value,
            priority=NotificationPriority.HIGH.value,
            action_url="/billing/payment-methods",
            metadata={
                "invoice_id": invoice.processor_invoice_id,
                "attempt": retry.attempt_count,
                "grace_deadline": retry.grace_deadline.isoformat(),
            },
        )

    def check_expiry(self, retry: PaymentRetry, now: datetime) -> bool:
        """
        Suspend when the grace deadline has been reached

        Returns:
            True if this call suspended the subscription
        """
        if retry.status != PaymentRetryStatus.FAILED.value:
            return False
        if now < retry.grace_deadline:
            return False
        return self.suspend(retry, now)

    def suspend(self, retry: PaymentRetry, now: datetime) -> bool:
        """
        Suspend the subscription behind a failing invoice

        Idempotent: an already suspended retry only re-requests a pending
        processor pause.
        """
        if retry.status == PaymentRetryStatus.SUSPENDED.value:
            if not retry.processor_paused:
                self._request_pause(retry)
            return False

        if retry.status == PaymentRetryStatus.RECOVERED.value:
            logger.info(f"Invoice {retry.processor_invoice_id} already recovered, not suspending")
            return False

        subscription = retry.subscription
        previous_status = subscription.status if subscription else None

        retry.status = PaymentRetryStatus.SUSPENDED.value
        retry.suspended_at = now
        retry.next_retry_at = None
        if subscription and subscription.status != SubscriptionStatus.CANCELED.value:
            subscription.status = SubscriptionStatus.PAST_DUE.value
        self.db.flush()

        self._request_pause(retry)

        logger.warning(
            f"Grace period expired for invoice {retry.processor_invoice_id}; "
            f"subscription {subscription.processor_subscription_id if subscription else '-'} suspended"
        )

        user_id = subscription.customer.user_id if subscription else None
        self.gateway.audit(
            action=AuditAction.SUBSCRIPTION_SUSPENDED_FOR_NONPAYMENT,
            entity="Subscription",
            entity_id=subscription.processor_subscription_id if subscription else None,
            user_id=user_id,
            outcome=AuditOutcome.SUCCESS.value,
            details={
                "invoice_id": retry.processor_invoice_id,
                "previous_status": previous_status,
                "grace_deadline": retry.grace_deadline.isoformat(),
                "processor_paused": retry.processor_paused,
            },
        )
        if user_id:
            self.gateway.notify(
                user_id=user_id,
                title="Subscription Suspended",
                message=(
                    "Your subscription has been suspended due to non-payment. "
                    "Please update your payment method to restore access."
                ),
                type=NotificationType.BILLING.value,
                priority=NotificationPriority.URGENT.value,
                action_url="/billing/payment-methods",
                metadata={"invoice_id": retry.processor_invoice_id},
            )
        return True

    def _request_pause(self, retry: PaymentRetry):
        subscription = retry.subscription
        if subscription is None:
            return

        try:
            result = self.processor.pause_collection(subscription.processor_subscription_id)
        except Exception as e:
            # Local suspension stands; the sweep retries the remote pause
            logger.error(
                f"Failed to pause collection for {subscription.processor_subscription_id}: {e}",
                exc_info=True,
            )
            return

        retry.processor_paused = bool(result and result.get("paused"))
        if not retry.processor_paused:
            logger.warning(f"Collection for {subscription.processor_subscription_id} not confirmed paused, sweep will retry")

    def resolve(self, processor_invoice_id: str, now: Optional[datetime] = None) -> bool:
        """
        Mark a failing invoice as recovered after a successful payment

        Returns:
            True if an open retry was resolved
        """
        retry = self.store.find_unique(PaymentRetry, for_update=True, processor_invoice_id=processor_invoice_id)
        if retry is None or retry.status == PaymentRetryStatus.RECOVERED.value:
            return False

        previous_status = retry.status
        retry.status = PaymentRetryStatus.RECOVERED.value
        retry.recovered_at = now or utcnow()
        retry.next_retry_at = None

        subscription = retry.subscription
        if retry.processor_paused and subscription is not None:
            try:
                self.processor.resume_collection(subscription.processor_subscription_id)
                retry.processor_paused = False
            except Exception as e:
                logger.error(
                    f"Failed to resume collection for {subscription.processor_subscription_id}: {e}",
                    exc_info=True,
                )
        self.db.flush()

        logger.info(f"Payment recovered for invoice {processor_invoice_id} (was {previous_status})")
        self.gateway.audit(
            action=AuditAction.PAYMENT_RECOVERED,
            entity="Invoice",
            entity_id=processor_invoice_id,
            user_id=subscription.customer.user_id if subscription else None,
            details={
                "previous_status": previous_status,
                "attempts": retry.attempt_count,
                "processor_paused": retry.processor_paused,
            },
        )
        return True

    def expire_grace_periods(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Sweep retries whose grace period has elapsed

        Called by the scheduled job. Each retry is committed and its gateway
        effects dispatched on its own, so one failure does not stop the sweep.

        Returns:
            Dictionary with action counts
        """
        now = now or utcnow()
        stats = {
            "processed": 0,
            "suspended": 0,
            "pause_retried": 0,
            "failed": 0,
        }

        due = self.db.query(PaymentRetry).filter(
            or_(
                and_(
                    PaymentRetry.status == PaymentRetryStatus.FAILED.value,
                    PaymentRetry.grace_deadline <= now,
                ),
                and_(
                    PaymentRetry.status == PaymentRetryStatus.SUSPENDED.value,
                    PaymentRetry.processor_paused.is_(False),
                    PaymentRetry.subscription_id.isnot(None),
                ),
            )
        ).order_by(PaymentRetry.grace_deadline).all()

        logger.info(f"Grace-period sweep: {len(due)} retries due")

        for retry in due:
            stats["processed"] += 1
            try:
                if retry.status == PaymentRetryStatus.SUSPENDED.value:
                    self.suspend(retry, now)
                    if retry.processor_paused:
                        stats["pause_retried"] += 1
                elif self.check_expiry(retry, now):
                    stats["suspended"] += 1
                self.db.commit()
                self.gateway.dispatch()
            except Exception as e:
                self.db.rollback()
                self.gateway.discard()
                stats["failed"] += 1
                logger.error(f"Error expiring retry {retry.id}: {e}", exc_info=True)

        logger.info(f"Grace-period sweep complete: {stats}")
        return stats


def get_retry_manager(
    db: Session,
    gateway: NotifierAuditorGateway,
    policy: Optional[RetryPolicy] = None,
    processor: Optional[ProcessorClient] = None,
) -> RetryManager:
    """
    Get retry manager instance

    Policy and processor default to the ones built from configuration.
    """
    from ..config import config
    from .processor_client import get_processor_client

    return RetryManager(
        db,
        policy=policy or config.retry_policy(),
        processor=processor or get_processor_client(config),
        gateway=gateway,
    )
