"""
Tests for the webhook processing pipeline
"""
import pytest
import time
from unittest.mock import Mock, patch

from billing_reconciler.config import config
from billing_reconciler.db.models import (
    AuditLog,
    Dispute,
    Invoice,
    InvoiceStatus,
    Notification,
    PaymentRetry,
    ProcessedEvent,
    Subscription,
    SubscriptionStatus,
)
from billing_reconciler.exceptions import DuplicateEventError, EventProcessingError
from billing_reconciler.services.audit_log_service import AuditAction, AuditLogService
from billing_reconciler.services.event_router import EventRouter
from billing_reconciler.services.webhook_processor import WebhookProcessor, build_webhook_processor
from billing_reconciler.utils import from_timestamp

from conftest import BASE_TS
from test_dispute_service import dispute_payload
from test_invoice_reconciler import invoice_payload
from test_subscription_reconciler import subscription_payload


class TestWebhookProcessor:
    """End-to-end processing of verified events"""

    @pytest.fixture
    def processor(self, db_session, processor_client):
        return build_webhook_processor(db_session, config=config, processor=processor_client)

    def test_invoice_paid_scenario(self, processor, db_session, subscription, make_event):
        """Test invoice paid for a known subscription: PAID, period advanced, one renewal audit"""
        result = processor.process(make_event("invoice.payment_succeeded", invoice_payload(amount_paid=15000)))

        assert result.outcome == "paid"
        assert result.duplicate is False
        db_session.refresh(subscription)
        assert subscription.current_period_end == from_timestamp(BASE_TS + 31 * 86400)
        assert db_session.query(Invoice).one().status == InvoiceStatus.PAID.value
        assert db_session.query(AuditLog).filter_by(action=AuditAction.SUBSCRIPTION_RENEWED).count() == 1
        history = AuditLogService(db_session).get_entity_audit_log("Subscription", "sub_test123")
        assert [entry.action for entry in history] == [AuditAction.SUBSCRIPTION_RENEWED]

    def test_invoice_failed_then_redelivered(self, processor, db_session, subscription, make_event):
        """Test invoice failure notifies once and redelivery is a no-op"""
        failed_ts = int(time.time())
        event = make_event("invoice.payment_failed", invoice_payload(), event_id="evt_fail_1", created=failed_ts)

        first = processor.process(event)
        second = processor.process(event)

        assert first.outcome == "payment_failed"
        assert second.duplicate is True
        assert second.outcome == "payment_failed"
        assert db_session.query(Invoice).one().status == InvoiceStatus.OPEN.value
        assert db_session.query(PaymentRetry).count() == 1
        assert db_session.query(Notification).filter_by(title="Payment Failed").count() == 1
        assert db_session.query(ProcessedEvent).filter_by(event_id="evt_fail_1").count() == 1
        assert db_session.query(AuditLog).filter_by(action=AuditAction.WEBHOOK_RECEIVED).count() == 1

    def test_high_value_dispute_scenario(self, processor, db_session, payment, make_event):
        """Test a $600 dispute with a $500 threshold"""
        result = processor.process(make_event("charge.dispute.created", dispute_payload(amount=60000)))

        assert result.outcome == "escalated"
        assert db_session.query(Dispute).one().payment_id == payment.id
        assert db_session.query(Notification).filter_by(title="Payment Dispute Created").count() == 2
        assert db_session.query(Notification).filter_by(title="HIGH-VALUE DISPUTE ESCALATION", user_id="senior-1").count() == 1
        assert db_session.query(AuditLog).filter_by(action=AuditAction.DISPUTE_AUTO_RESPONSE_INITIATED).count() == 0

    def test_out_of_order_subscription_events(self, processor, db_session, subscription, make_event):
        """Test an earlier update delivered after deletion leaves the subscription canceled"""
        processor.process(make_event("customer.subscription.deleted", subscription_payload(), created=BASE_TS + 100))
        result = processor.process(make_event("customer.subscription.updated", subscription_payload(status="active"), created=BASE_TS + 50))

        assert result.outcome == "stale"
        assert db_session.query(Subscription).one().status == SubscriptionStatus.CANCELED.value

    def test_registered_event_types(self, processor):
        assert len(processor.router.event_types) == 14
        assert "charge.dispute.created" in processor.router.event_types
        assert "balance.available" not in processor.router.event_types

    def test_unknown_type_ignored_and_marked(self, processor, db_session, make_event):
        """Test unknown event types are acknowledged and recorded"""
        result = processor.process(make_event("balance.available", {"id": "bal_1"}, event_id="evt_unknown"))

        assert result.outcome == "ignored"
        assert db_session.query(ProcessedEvent).filter_by(event_id="evt_unknown").one().outcome == "ignored"

    def test_not_found_still_marked_processed(self, processor, db_session, make_event):
        """Test events for unknown entities are consumed"""
        result = processor.process(make_event("payment_intent.succeeded", {"id": "pi_elsewhere"}, event_id="evt_nf"))

        assert result.outcome == "not_found"
        assert db_session.query(ProcessedEvent).filter_by(event_id="evt_nf").count() == 1

    def test_handler_failure_rolls_back(self, db_session, gateway, subscription, make_event):
        """Test a failing handler commits nothing and is retried on redelivery"""
        def half_done(event):
            subscription.status = SubscriptionStatus.UNPAID.value
            gateway.notify(user_id="user-1", title="Should not send", message="x")
            db_session.flush()
            raise RuntimeError("database hiccup")

        processor = WebhookProcessor(db_session, EventRouter({"customer.subscription.updated": half_done}), gateway)
        event = make_event("customer.subscription.updated", {"id": "sub_test123"}, event_id="evt_boom")

        with pytest.raises(EventProcessingError) as exc_info:
            processor.process(event)

        assert exc_info.value.event_id == "evt_boom"
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert db_session.query(ProcessedEvent).count() == 0
        assert db_session.query(Notification).count() == 0
        failure = db_session.query(AuditLog).filter_by(action=AuditAction.WEBHOOK_PROCESSING_FAILED).one()
        assert failure.entity_id == "evt_boom"

        processor.router.register("customer.subscription.updated", lambda e: "updated")
        assert processor.process(event).outcome == "updated"

    def test_concurrent_duplicate_discards_effects(self, db_session, gateway, make_event):
        """Test losing the idempotency race rolls back and sends nothing"""
        def handler(event):
            gateway.notify(user_id="user-1", title="Once", message="x")
            return "done"

        ledger = Mock()
        ledger.has_processed.return_value = False
        ledger.get_record.return_value = None
        ledger.mark_processed.side_effect = DuplicateEventError("evt_race")

        processor = WebhookProcessor(db_session, EventRouter({"x.y": handler}), gateway, ledger=ledger)
        result = processor.process(make_event("x.y", {"id": "obj"}, event_id="evt_race"))

        assert result.duplicate is True
        assert gateway.pending == []
        assert db_session.query(Notification).count() == 0

    def test_post_commit_effect_failure_does_not_fail_event(self, processor, db_session, subscription, make_event):
        """Test notifier failures after commit are logged, not raised"""
        with patch.object(processor.gateway.notifier, "create_notification", side_effect=RuntimeError("down")):
            result = processor.process(make_event(
                "invoice.payment_failed", invoice_payload(), event_id="evt_nf_down", created=int(time.time()),
            ))

        assert result.outcome == "payment_failed"
        assert db_session.query(ProcessedEvent).filter_by(event_id="evt_nf_down").count() == 1
