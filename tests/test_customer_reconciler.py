"""
Tests for customer and payment-method reconciliation
"""
import pytest

from billing_reconciler.db.models import AuditLog, Customer, Notification, PaymentMethod, SubscriptionStatus
from billing_reconciler.exceptions import ProcessorError
from billing_reconciler.services.audit_log_service import AuditAction
from billing_reconciler.services.customer_reconciler import CustomerReconciler


class TestCustomerReconciler:
    """Test customer linking"""

    @pytest.fixture
    def reconciler(self, db_session, gateway):
        return CustomerReconciler(db_session, gateway)

    def test_customer_created_links_user(self, reconciler, db_session, gateway, make_event):
        event = make_event("customer.created", {
            "id": "cus_new",
            "email": "new@example.com",
            "metadata": {"userId": "user-7"},
        })

        assert reconciler.handle_customer_created(event) == "created"
        db_session.commit()

        customer = db_session.query(Customer).filter_by(processor_customer_id="cus_new").one()
        assert customer.user_id == "user-7"
        assert gateway.pending == [f"audit:{AuditAction.CUSTOMER_CREATED}"]

    def test_customer_without_user_ignored(self, reconciler, db_session, make_event):
        event = make_event("customer.created", {"id": "cus_anon", "metadata": {}})

        assert reconciler.handle_customer_created(event) == "ignored"
        assert db_session.query(Customer).count() == 0

    def test_customer_already_linked(self, reconciler, customer, gateway, make_event):
        event = make_event("customer.created", {"id": "cus_test123", "metadata": {"userId": "user-1"}})

        assert reconciler.handle_customer_created(event) == "exists"
        assert gateway.pending == []

    def test_payment_method_attached(self, reconciler, db_session, customer, make_event):
        event = make_event("payment_method.attached", {
            "id": "pm_1",
            "type": "card",
            "customer": "cus_test123",
            "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
        })

        assert reconciler.handle_payment_method_attached(event) == "attached"
        db_session.commit()

        method = db_session.query(PaymentMethod).filter_by(processor_payment_method_id="pm_1").one()
        assert method.customer_id == customer.id
        assert method.card_last4 == "4242"

    def test_payment_method_unknown_customer(self, reconciler, make_event):
        event = make_event("payment_method.attached", {"id": "pm_2", "customer": "cus_unknown"})

        assert reconciler.handle_payment_method_attached(event) == "not_found"


class TestSetupIntentSucceeded:
    """Test moving pending subscriptions onto a new payment method"""

    @pytest.fixture
    def reconciler(self, db_session, gateway, processor_client):
        return CustomerReconciler(db_session, gateway, processor=processor_client)

    @pytest.fixture
    def pending_subscription(self, db_session, subscription):
        subscription.status = SubscriptionStatus.INCOMPLETE.value
        db_session.commit()
        return subscription

    @staticmethod
    def setup_intent(customer_id="cus_test123", payment_method="pm_new"):
        return {
            "id": "seti_1",
            "object": "setup_intent",
            "customer": customer_id,
            "payment_method": payment_method,
            "status": "succeeded",
        }

    def test_pending_subscription_activated(
        self, reconciler, db_session, gateway, processor_client, pending_subscription, make_event
    ):
        event = make_event("setup_intent.succeeded", self.setup_intent())

        assert reconciler.handle_setup_intent_succeeded(event) == "subscriptions_updated"
        processor_client.set_default_payment_method.assert_called_once_with("sub_test123", "pm_new")
        assert gateway.pending == [
            f"audit:{AuditAction.SETUP_INTENT_SUCCEEDED}",
            f"audit:{AuditAction.PENDING_SUBSCRIPTION_UPDATED}",
            "notify:Subscription Activated:user-1",
        ]

        db_session.commit()
        gateway.dispatch()
        db_session.refresh(pending_subscription)
        assert pending_subscription.status == SubscriptionStatus.ACTIVE.value

        notification = db_session.query(Notification).one()
        assert notification.action_url == "/billing/subscriptions"
        assert "new payment method" in notification.message

    def test_processor_failure_is_audited(
        self, reconciler, db_session, gateway, processor_client, pending_subscription, make_event
    ):
        processor_client.set_default_payment_method.side_effect = ProcessorError("card declined")
        event = make_event("setup_intent.succeeded", self.setup_intent())

        assert reconciler.handle_setup_intent_succeeded(event) == "partially_updated"
        db_session.commit()
        gateway.dispatch()

        db_session.refresh(pending_subscription)
        assert pending_subscription.status == SubscriptionStatus.INCOMPLETE.value
        failure = db_session.query(AuditLog).filter_by(action=AuditAction.PENDING_SUBSCRIPTION_UPDATE_FAILED).one()
        assert failure.outcome == "failure"
        assert failure.entity_id == "sub_test123"
        assert db_session.query(Notification).count() == 0

    def test_no_pending_subscriptions(self, reconciler, gateway, processor_client, subscription, make_event):
        event = make_event("setup_intent.succeeded", self.setup_intent())

        assert reconciler.handle_setup_intent_succeeded(event) == "recorded"
        processor_client.set_default_payment_method.assert_not_called()
        assert gateway.pending == [f"audit:{AuditAction.SETUP_INTENT_SUCCEEDED}"]

    def test_unknown_customer(self, reconciler, gateway, processor_client, make_event):
        event = make_event("setup_intent.succeeded", self.setup_intent(customer_id="cus_unknown"))

        assert reconciler.handle_setup_intent_succeeded(event) == "not_found"
        processor_client.set_default_payment_method.assert_not_called()
        assert gateway.pending == []
