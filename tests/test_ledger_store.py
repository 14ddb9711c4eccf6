"""
Tests for the ledger store and idempotency ledger
"""
import pytest
from unittest.mock import patch

from billing_reconciler.db.ledger_store import LedgerStore
from billing_reconciler.db.models import Customer, ProcessedEvent
from billing_reconciler.exceptions import DuplicateEventError
from billing_reconciler.services.idempotency import IdempotencyLedger


class TestLedgerStore:
    """Test keyed upserts"""

    @pytest.fixture
    def store(self, db_session):
        return LedgerStore(db_session)

    def test_upsert_creates(self, store, db_session):
        """Test upsert inserts an unknown key"""
        row, created = store.upsert(
            Customer,
            {"processor_customer_id": "cus_new"},
            create={"user_id": "user-9"},
        )
        db_session.commit()

        assert created is True
        assert row.id is not None
        assert store.count(Customer, processor_customer_id="cus_new") == 1

    def test_upsert_updates_existing(self, store, db_session, customer):
        """Test upsert applies the update patch to an existing row"""
        row, created = store.upsert(
            Customer,
            {"processor_customer_id": customer.processor_customer_id},
            create={"user_id": "ignored"},
            update={"email": "new@example.com"},
        )

        assert created is False
        assert row.id == customer.id
        assert row.user_id == "user-1"
        assert row.email == "new@example.com"

    def test_upsert_callable_update(self, store, customer):
        """Test update callables receive the locked row"""
        seen = []
        store.upsert(
            Customer,
            {"processor_customer_id": customer.processor_customer_id},
            create={"user_id": "ignored"},
            update=seen.append,
        )

        assert seen == [customer]

    def test_upsert_concurrent_insert_becomes_update(self, store, db_session, customer):
        """Test losing an insert race is resolved as an update"""
        real_find = store.find_unique
        calls = {"n": 0}

        def stale_first_read(model, for_update=False, **key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_find(model, for_update=for_update, **key)

        with patch.object(store, "find_unique", side_effect=stale_first_read):
            row, created = store.upsert(
                Customer,
                {"processor_customer_id": customer.processor_customer_id},
                create={"user_id": customer.user_id},
                update={"name": "Racer"},
            )

        assert created is False
        assert row.id == customer.id
        assert row.name == "Racer"
        assert store.count(Customer) == 1

    def test_update_unknown_key(self, store):
        """Test update of an unknown key returns None"""
        assert store.update(Customer, {"processor_customer_id": "cus_missing"}, {"name": "x"}) is None


class TestIdempotencyLedger:
    """Test processed-event recording"""

    def test_mark_and_check(self, db_session):
        """Test a marked event is reported as processed"""
        ledger = IdempotencyLedger(db_session)
        assert ledger.has_processed("evt_1") is False

        ledger.mark_processed("evt_1", "invoice.payment_failed", "payment_failed")
        db_session.commit()

        assert ledger.has_processed("evt_1") is True
        assert ledger.get_record("evt_1").outcome == "payment_failed"

    def test_duplicate_mark_raises(self, db_session):
        """Test the unique constraint turns a second insert into DuplicateEventError"""
        ledger = IdempotencyLedger(db_session)
        ledger.mark_processed("evt_1", "invoice.payment_failed", "payment_failed")
        db_session.commit()

        with pytest.raises(DuplicateEventError):
            ledger.mark_processed("evt_1", "invoice.payment_failed", "payment_failed")

        assert db_session.query(ProcessedEvent).count() == 1

    def test_uncommitted_mark_rolls_back(self, db_session):
        """Test the record disappears with the transaction it was written in"""
        ledger = IdempotencyLedger(db_session)
        ledger.mark_processed("evt_1", "x", "ok")
        db_session.rollback()

        assert ledger.has_processed("evt_1") is False
