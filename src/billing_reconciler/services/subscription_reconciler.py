"""
Subscription Reconciler

Synchronizes subscription lifecycle state from processor events. The
processor payload is authoritative, but only when it is at least as recent
as the last event applied to the row (`last_event_at`).
"""
import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..db.ledger_store import LedgerStore
from ..db.models.customer import Customer
from ..db.models.dunning import PaymentRetry, PaymentRetryStatus
from ..db.models.subscription import Subscription, SubscriptionStatus
from ..utils import from_timestamp, minor_to_major
from .audit_log_service import AuditAction
from .event_verifier import VerifiedEvent
from .notification_gateway import NotifierAuditorGateway

logger = logging.getLogger(__name__)

STATUS_MAP = {status.value: status for status in SubscriptionStatus}

SPARSE_FIELDS = (
    "processor_price_id",
    "plan_name",
    "amount",
    "currency",
    "interval",
    "current_period_start",
    "current_period_end",
)

RECOVERABLE_STATUSES = {
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.UNPAID.value,
}

# Processor statuses that do not lift a local grace-period suspension
SUSPENSION_MASKED_STATUSES = {
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAUSED.value,
}


def add_interval(start: datetime, interval: Optional[str], count: int = 1) -> datetime:
    """Advance a datetime by a billing interval (day/week/month/year)"""
    count = count or 1
    if interval == "day":
        return start + timedelta(days=count)
    if interval == "week":
        return start + timedelta(weeks=count)

    months = count * 12 if interval == "year" else count
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def is_stale(row_last_event_at: Optional[datetime], event_created_at: datetime) -> bool:
    """An event is stale when a strictly newer one has already been applied"""
    return row_last_event_at is not None and event_created_at < row_last_event_at


class SubscriptionReconciler:
    """Upserts subscriptions from processor subscription and invoice events"""

    def __init__(self, db: Session, gateway: NotifierAuditorGateway):
        self.db = db
        self.store = LedgerStore(db)
        self.gateway = gateway

    def _extract_fields(self, data: Dict[str, Any]) -> Dict[str, Any]:
        items = (data.get("items") or {}).get("data") or []
        item = items[0] if items else {}
        price = item.get("price") or data.get("plan") or {}
        recurring = price.get("recurring") or {}
        metadata = data.get("metadata") or {}

        fields = {
            "processor_price_id": price.get("id"),
            "plan_name": metadata.get("plan_name") or price.get("nickname") or price.get("product"),
            "amount": minor_to_major(price.get("unit_amount"), price.get("currency")) if price.get("unit_amount") is not None else None,
            "currency": price.get("currency"),
            "interval": recurring.get("interval") or price.get("interval"),
            "interval_count": recurring.get("interval_count") or price.get("interval_count") or 1,
            # Newer API versions carry periods on the item
            "current_period_start": from_timestamp(data.get("current_period_start") or item.get("current_period_start")),
            "current_period_end": from_timestamp(data.get("current_period_end") or item.get("current_period_end")),
            "trial_start": from_timestamp(data.get("trial_start")),
            "trial_end": from_timestamp(data.get("trial_end")),
            "cancel_at": from_timestamp(data.get("cancel_at")),
            "canceled_at": from_timestamp(data.get("canceled_at")),
            "extra_metadata": metadata,
        }

        # Absent plan/period data leaves the stored values alone; trial and
        # cancellation fields are cleared when the processor clears them
        for column in SPARSE_FIELDS:
            if fields[column] is None:
                del fields[column]

        status = STATUS_MAP.get(data.get("status"))
        if status is None:
            logger.warning(f"Unknown subscription status '{data.get('status')}' for {data.get('id')}, keeping local status")
        else:
            fields["status"] = status.value
        return fields

    def _find_customer(self, data: Dict[str, Any]) -> Optional[Customer]:
        processor_customer_id = data.get("customer")
        if not processor_customer_id:
            return None
        return self.store.find_unique(Customer, processor_customer_id=processor_customer_id)

    def _guard_status(self, subscription: Subscription, fields: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Protect locally owned statuses from the incoming payload

        CANCELED is terminal: only a deletion may write it again. While the
        grace manager holds the subscription suspended, the processor reports
        it as active with collection paused; it stays PAST_DUE until recovery.
        """
        incoming = fields.get("status")
        if incoming is None or incoming == subscription.status:
            return fields

        if subscription.status == SubscriptionStatus.CANCELED.value:
            logger.info(
                f"Subscription {subscription.processor_subscription_id} is canceled, "
                f"ignoring processor status {incoming}"
            )
            return {column: value for column, value in fields.items() if column != "status"}

        if subscription.status == SubscriptionStatus.PAST_DUE.value and incoming in SUSPENSION_MASKED_STATUSES:
            suspended = subscription.id is not None and self.store.count(
                PaymentRetry,
                subscription_id=subscription.id,
                status=PaymentRetryStatus.SUSPENDED.value,
            ) > 0
            if suspended or data.get("pause_collection"):
                logger.info(
                    f"Subscription {subscription.processor_subscription_id} is suspended for non-payment, "
                    f"keeping past_due over processor status {incoming}"
                )
                return {**fields, "status": SubscriptionStatus.PAST_DUE.value}

        return fields

    def _upsert(self, event: VerifiedEvent, customer: Customer, fields: Dict[str, Any]) -> Tuple[Subscription, bool, bool, Optional[str]]:
        """Apply-then-compare upsert; returns (row, created, applied, previous_status)"""
        outcome = {"applied": False, "previous_status": None}

        def _apply(subscription: Subscription):
            outcome["previous_status"] = subscription.status
            if is_stale(subscription.last_event_at, event.created_at):
                return
            for column, value in self._guard_status(subscription, fields, event.payload).items():
                setattr(subscription, column, value)
            subscription.last_event_at = event.created_at
            outcome["applied"] = True

        create = {"customer_id": customer.id, "last_event_at": event.created_at, **fields}
        create.setdefault("status", SubscriptionStatus.INCOMPLETE.value)

        subscription, created = self.store.upsert(
            Subscription,
            {"processor_subscription_id": event.payload["id"]},
            create=create,
            update=_apply,
        )
        return subscription, created, created or outcome["applied"], outcome["previous_status"]

    def handle_subscription_upserted(self, event: VerifiedEvent) -> str:
        """customer.subscription.created / customer.subscription.updated"""
        data = event.payload
        customer = self._find_customer(data)
        if customer is None:
            logger.warning(f"Customer {data.get('customer')} not found for subscription {data.get('id')}")
            return "not_found"

        subscription, created, applied, previous_status = self._upsert(event, customer, self._extract_fields(data))

        if not applied:
            logger.info(
                f"Skipping stale {event.type} for subscription {subscription.processor_subscription_id} "
                f"(event {event.created_at} < last applied {subscription.last_event_at})"
            )
            return "stale"

        action = AuditAction.SUBSCRIPTION_CREATED if created else AuditAction.SUBSCRIPTION_UPDATED
        self.gateway.audit(
            action=action,
            entity="Subscription",
            entity_id=subscription.processor_subscription_id,
            user_id=customer.user_id,
            details={
                "event_type": event.type,
                "previous_status": previous_status,
                "status": subscription.status,
                "plan_name": subscription.plan_name,
                "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
            },
        )
        logger.info(f"Subscription {subscription.processor_subscription_id} {'created' if created else 'updated'}: {subscription.status}")
        return "created" if created else "updated"

    def handle_subscription_deleted(self, event: VerifiedEvent) -> str:
        """customer.subscription.deleted - force CANCELED"""
        data = event.payload
        customer = self._find_customer(data)
        if customer is None:
            logger.warning(f"Customer {data.get('customer')} not found for deleted subscription {data.get('id')}")
            return "not_found"

        fields = self._extract_fields(data)
        fields["status"] = SubscriptionStatus.CANCELED.value
        fields["canceled_at"] = from_timestamp(data.get("canceled_at") or data.get("ended_at")) or event.created_at

        subscription, created, applied, previous_status = self._upsert(event, customer, fields)
        if not applied:
            logger.info(f"Skipping stale deletion for subscription {subscription.processor_subscription_id}")
            return "stale"

        self.gateway.audit(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            entity="Subscription",
            entity_id=subscription.processor_subscription_id,
            user_id=customer.user_id,
            details={
                "previous_status": previous_status,
                "canceled_at": subscription.canceled_at.isoformat(),
            },
        )
        logger.info(f"Subscription {subscription.processor_subscription_id} canceled")
        return "canceled"

    @staticmethod
    def _invoice_period(invoice_data: Dict[str, Any]) -> Optional[Tuple[datetime, datetime]]:
        """Billing period of the subscription line on an invoice, if present"""
        lines = (invoice_data.get("lines") or {}).get("data") or []
        for line in lines:
            period = line.get("period") or {}
            if period.get("start") and period.get("end"):
                return from_timestamp(period["start"]), from_timestamp(period["end"])
        return None

    def renew(self, processor_subscription_id: str, invoice_data: Dict[str, Any], event: VerifiedEvent) -> str:
        """
        Re-derive the current period after a paid subscription invoice

        The period never moves backwards. A PAST_DUE/UNPAID subscription
        returns to ACTIVE unless a newer subscription event has been applied.
        """
        subscription = self.store.find_unique(
            Subscription, for_update=True, processor_subscription_id=processor_subscription_id
        )
        if subscription is None:
            logger.warning(f"Subscription {processor_subscription_id} not found for renewal")
            return "not_found"

        previous_end = subscription.current_period_end
        previous_status = subscription.status

        period = self._invoice_period(invoice_data)
        if period is None:
            start = previous_end or event.created_at
            period = (start, add_interval(start, subscription.interval, subscription.interval_count))

        start, end = period
        if previous_end is None or end > previous_end:
            subscription.current_period_start = start
            subscription.current_period_end = end

        if not is_stale(subscription.last_event_at, event.created_at):
            if subscription.status in RECOVERABLE_STATUSES:
                subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.last_event_at = event.created_at
        self.db.flush()

        self.gateway.audit(
            action=AuditAction.SUBSCRIPTION_RENEWED,
            entity="Subscription",
            entity_id=processor_subscription_id,
            user_id=subscription.customer.user_id,
            details={
                "invoice_id": invoice_data.get("id"),
                "previous_period_end": previous_end.isoformat() if previous_end else None,
                "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
                "previous_status": previous_status,
                "status": subscription.status,
            },
        )
        logger.info(f"Subscription {processor_subscription_id} renewed through {subscription.current_period_end}")
        return "renewed"
