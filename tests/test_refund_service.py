"""
Tests for refund service
"""
import pytest
from decimal import Decimal

from billing_reconciler.db.models import AuditLog, AuditOutcome, PaymentStatus, Refund, RefundStatus
from billing_reconciler.exceptions import RefundError, ProcessorError
from billing_reconciler.services.audit_log_service import AuditAction
from billing_reconciler.services.refund_service import RefundService


class TestRefundService:
    """Test refund service"""

    @pytest.fixture
    def refund_service(self, db_session, processor_client, gateway):
        return RefundService(db_session, processor_client, gateway)

    def test_full_refund(self, refund_service, db_session, payment, processor_client):
        """Test refunding the whole remaining balance"""
        refund = refund_service.create_refund("pi_test123")

        processor_client.create_refund.assert_called_once_with(
            "pi_test123", 60000, reason="requested_by_customer", metadata={},
        )
        assert refund.amount == Decimal("600.00")
        assert refund.status == RefundStatus.SUCCEEDED.value
        assert refund.processor_refund_id == "re_test_1"

        db_session.refresh(payment)
        assert payment.refunded is True
        assert payment.refundable_amount == 0
        assert db_session.query(AuditLog).filter_by(action=AuditAction.REFUND_REQUESTED).count() == 1

    def test_partial_refund(self, refund_service, db_session, payment, processor_client):
        """Test a partial refund leaves the rest refundable"""
        refund_service.create_refund("pi_test123", amount=Decimal("100.50"), requested_by="admin-1")

        args, kwargs = processor_client.create_refund.call_args
        assert args == ("pi_test123", 10050)
        assert kwargs["metadata"] == {"requested_by": "admin-1"}

        db_session.refresh(payment)
        assert payment.refunded is False
        assert payment.refundable_amount == Decimal("499.50")

    def test_refund_exceeding_balance(self, refund_service, payment, processor_client):
        """Test refunds larger than the remaining balance are rejected"""
        with pytest.raises(RefundError, match="exceeds"):
            refund_service.create_refund("pi_test123", amount=Decimal("600.01"))

        processor_client.create_refund.assert_not_called()

    def test_refund_unsucceeded_payment(self, refund_service, db_session, payment):
        """Test only succeeded payments can be refunded"""
        payment.status = PaymentStatus.FAILED.value
        db_session.commit()

        with pytest.raises(RefundError):
            refund_service.create_refund("pi_test123")

    def test_refund_unknown_payment(self, refund_service):
        with pytest.raises(RefundError, match="not found"):
            refund_service.create_refund("pi_missing")

    def test_processor_rejection_is_audited(self, refund_service, db_session, payment, processor_client):
        """Test a processor failure persists nothing and is audited as a failure"""
        processor_client.create_refund.side_effect = ProcessorError("charge already refunded")

        with pytest.raises(ProcessorError):
            refund_service.create_refund("pi_test123")

        assert db_session.query(Refund).count() == 0
        entry = db_session.query(AuditLog).filter_by(action=AuditAction.REFUND_REQUESTED).one()
        assert entry.outcome == AuditOutcome.FAILURE.value


class TestChargeRefunded:
    """Test charge.refunded reconciliation"""

    @pytest.fixture
    def refund_service(self, db_session, processor_client, gateway):
        return RefundService(db_session, processor_client, gateway)

    def charge(self, amount_refunded, refunds, refunded=False):
        return {
            "id": "ch_test1",
            "object": "charge",
            "payment_intent": "pi_test123",
            "currency": "usd",
            "amount": 60000,
            "amount_refunded": amount_refunded,
            "refunded": refunded,
            "refunds": {"data": refunds},
        }

    def test_records_refunds(self, refund_service, db_session, gateway, payment, make_event):
        """Test processor refunds are upserted and totals updated"""
        event = make_event("charge.refunded", self.charge(20000, [
            {"id": "re_1", "amount": 20000, "status": "succeeded", "reason": "requested_by_customer"},
        ]))

        assert refund_service.handle_charge_refunded(event) == "refunded"
        db_session.commit()

        refund = db_session.query(Refund).filter_by(processor_refund_id="re_1").one()
        assert refund.amount == Decimal("200.00")
        assert payment.refunded_amount == Decimal("200.00")
        assert payment.refunded is False
        assert gateway.pending == [f"audit:{AuditAction.PAYMENT_REFUNDED}"]

    def test_cumulative_total_never_decreases(self, refund_service, db_session, payment, make_event):
        """Test an older partial total arriving late does not lower the refunded amount"""
        refund_service.handle_charge_refunded(make_event("charge.refunded", self.charge(60000, [
            {"id": "re_1", "amount": 20000, "status": "succeeded"},
            {"id": "re_2", "amount": 40000, "status": "succeeded"},
        ], refunded=True)))
        refund_service.handle_charge_refunded(make_event("charge.refunded", self.charge(20000, [
            {"id": "re_1", "amount": 20000, "status": "succeeded"},
        ])))
        db_session.commit()

        assert payment.refunded_amount == Decimal("600.00")
        assert payment.refunded is True
        assert db_session.query(Refund).count() == 2

    def test_unknown_payment(self, refund_service, make_event):
        event = make_event("charge.refunded", dict(self.charge(100, []), payment_intent="pi_other"))

        assert refund_service.handle_charge_refunded(event) == "not_found"
