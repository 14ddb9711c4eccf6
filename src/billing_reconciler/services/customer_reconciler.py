"""
Customer and payment-method reconciliation
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..db.ledger_store import LedgerStore
from ..db.models.audit import AuditOutcome
from ..db.models.customer import Customer, PaymentMethod, PaymentMethodType
from ..db.models.notification import NotificationType, NotificationPriority
from ..db.models.subscription import Subscription, SubscriptionStatus
from ..exceptions import ProcessorError
from .audit_log_service import AuditAction
from .event_verifier import VerifiedEvent
from .notification_gateway import NotifierAuditorGateway
from .processor_client import ProcessorClient
from .subscription_reconciler import STATUS_MAP, is_stale

logger = logging.getLogger(__name__)

PAYMENT_METHOD_TYPES = {t.value for t in PaymentMethodType}

PENDING_STATUSES = (
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
)

ACTIVATED_STATUSES = {
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
}


class CustomerReconciler:
    """Links processor customers to local users and tracks their payment methods"""

    def __init__(self, db: Session, gateway: NotifierAuditorGateway, processor: Optional[ProcessorClient] = None):
        self.db = db
        self.store = LedgerStore(db)
        self.gateway = gateway
        self.processor = processor

    @staticmethod
    def _user_id(metadata: dict) -> Optional[str]:
        user_id = metadata.get("userId") or metadata.get("user_id")
        return str(user_id) if user_id else None

    def handle_customer_created(self, event: VerifiedEvent) -> str:
        """customer.created - link a processor customer to a local user"""
        data = event.payload
        user_id = self._user_id(data.get("metadata") or {})
        if not user_id:
            logger.info(f"Customer {data.get('id')} has no userId metadata, nothing to link")
            return "ignored"

        customer, created = self.store.upsert(
            Customer,
            {"processor_customer_id": data["id"]},
            create={
                "user_id": user_id,
                "email": data.get("email"),
                "name": data.get("name"),
            },
        )
        if not created:
            logger.info(f"Customer {customer.processor_customer_id} already linked to user {customer.user_id}")
            return "exists"

        self.gateway.audit(
            action=AuditAction.CUSTOMER_CREATED,
            entity="Customer",
            entity_id=customer.processor_customer_id,
            user_id=user_id,
            details={"email": customer.email},
        )
        logger.info(f"Linked processor customer {customer.processor_customer_id} to user {user_id}")
        return "created"

    def handle_payment_method_attached(self, event: VerifiedEvent) -> str:
        """payment_method.attached"""
        data = event.payload
        customer = None
        if data.get("customer"):
            customer = self.store.find_unique(Customer, processor_customer_id=data["customer"])
        if customer is None:
            logger.warning(f"Customer {data.get('customer')} not found for payment method {data.get('id')}")
            return "not_found"

        card = data.get("card") or {}
        method_type = data.get("type")
        values = {
            "customer_id": customer.id,
            "type": method_type if method_type in PAYMENT_METHOD_TYPES else PaymentMethodType.CARD.value,
            "card_brand": card.get("brand"),
            "card_last4": card.get("last4"),
            "card_exp_month": card.get("exp_month"),
            "card_exp_year": card.get("exp_year"),
            "is_active": True,
            "extra_metadata": data.get("metadata") or {},
        }
        method, created = self.store.upsert(
            PaymentMethod,
            {"processor_payment_method_id": data["id"]},
            create=values,
            update=values,
        )

        self.gateway.audit(
            action=AuditAction.PAYMENT_METHOD_ATTACHED,
            entity="PaymentMethod",
            entity_id=method.processor_payment_method_id,
            user_id=customer.user_id,
            details={"type": method.type, "card_brand": method.card_brand, "card_last4": method.card_last4},
        )
        logger.info(f"Payment method {method.processor_payment_method_id} attached to customer {customer.processor_customer_id}")
        return "attached" if created else "updated"

    def handle_setup_intent_succeeded(self, event: VerifiedEvent) -> str:
        """
        setup_intent.succeeded - move pending subscriptions onto the new payment method

        Each incomplete subscription is updated on its own; a processor
        failure is audited for that subscription and the rest continue.
        """
        data = event.payload
        customer = None
        if data.get("customer"):
            customer = self.store.find_unique(Customer, processor_customer_id=data["customer"])
        if customer is None:
            logger.warning(f"Customer {data.get('customer')} not found for setup intent {data.get('id')}")
            return "not_found"

        payment_method_id = data.get("payment_method")
        self.gateway.audit(
            action=AuditAction.SETUP_INTENT_SUCCEEDED,
            entity="PaymentMethod",
            entity_id=payment_method_id,
            user_id=customer.user_id,
            details={"setup_intent_id": data.get("id"), "payment_method_id": payment_method_id},
        )
        if not payment_method_id:
            return "recorded"

        pending = self.db.query(Subscription).filter(
            Subscription.customer_id == customer.id,
            Subscription.status.in_(PENDING_STATUSES),
        ).order_by(Subscription.id).all()
        if not pending:
            return "recorded"

        failed = 0
        for subscription in pending:
            if not self._activate_pending(event, customer, subscription, payment_method_id):
                failed += 1

        logger.info(
            f"Setup intent {data.get('id')}: {len(pending) - failed}/{len(pending)} pending subscriptions "
            f"moved to payment method {payment_method_id}"
        )
        return "subscriptions_updated" if failed == 0 else "partially_updated"

    def _activate_pending(
        self,
        event: VerifiedEvent,
        customer: Customer,
        subscription: Subscription,
        payment_method_id: str,
    ) -> bool:
        if self.processor is None:
            raise ProcessorError("No processor client configured")

        try:
            result = self.processor.set_default_payment_method(subscription.processor_subscription_id, payment_method_id)
        except ProcessorError as e:
            logger.error(f"Failed to update pending subscription {subscription.processor_subscription_id}: {e}")
            self.gateway.audit(
                action=AuditAction.PENDING_SUBSCRIPTION_UPDATE_FAILED,
                entity="Subscription",
                entity_id=subscription.processor_subscription_id,
                user_id=customer.user_id,
                outcome=AuditOutcome.FAILURE.value,
                details={"payment_method_id": payment_method_id, "error": str(e)},
            )
            return False

        new_status = STATUS_MAP.get(result.get("status"))
        if new_status is not None and not is_stale(subscription.last_event_at, event.created_at):
            subscription.status = new_status.value
            subscription.last_event_at = event.created_at
        self.db.flush()

        self.gateway.audit(
            action=AuditAction.PENDING_SUBSCRIPTION_UPDATED,
            entity="Subscription",
            entity_id=subscription.processor_subscription_id,
            user_id=customer.user_id,
            details={"payment_method_id": payment_method_id, "status": subscription.status},
        )
        if subscription.status in ACTIVATED_STATUSES:
            self.gateway.notify(
                user_id=customer.user_id,
                title="Subscription Activated",
                message=f"Your {subscription.plan_name or 'subscription'} plan has been activated with your new payment method.",
                type=NotificationType.BILLING.value,
                priority=NotificationPriority.NORMAL.value,
                action_url="/billing/subscriptions",
                metadata={
                    "subscription_id": subscription.processor_subscription_id,
                    "payment_method_id": payment_method_id,
                },
            )
        return True
