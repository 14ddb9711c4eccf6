"""
Tests for webhook signature verification
"""
import json
import pytest
from datetime import datetime
from unittest.mock import patch

import stripe

from billing_reconciler.exceptions import MissingSignatureError, SignatureVerificationError, MalformedEventError
from billing_reconciler.services.event_verifier import EventVerifier, compute_signature, generate_signature_header

from conftest import BASE_TS, WEBHOOK_SECRET, build_event_body


class TestEventVerifier:
    """Test event verification"""

    @pytest.fixture
    def verifier(self):
        return EventVerifier(WEBHOOK_SECRET, tolerance_seconds=300)

    @pytest.fixture
    def body(self):
        return build_event_body("invoice.payment_succeeded", {"id": "in_1", "amount_paid": 15000}, event_id="evt_1")

    def test_valid_signature(self, verifier, body):
        """Test a correctly signed event is parsed"""
        header = generate_signature_header(body, WEBHOOK_SECRET, timestamp=BASE_TS)

        event = verifier.verify(body, header, now=BASE_TS + 10)

        assert event.id == "evt_1"
        assert event.type == "invoice.payment_succeeded"
        assert event.payload["amount_paid"] == 15000
        assert event.created_at == datetime(2026, 1, 15, 12, 0, 0)
        assert event.get("id") == "in_1"

    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_missing_signature(self, verifier, body, header):
        """Test missing signature header is rejected"""
        with pytest.raises(MissingSignatureError):
            verifier.verify(body, header, now=BASE_TS)

    def test_wrong_secret(self, verifier, body):
        """Test signature made with another secret is rejected"""
        header = generate_signature_header(body, "whsec_other", timestamp=BASE_TS)

        with pytest.raises(SignatureVerificationError):
            verifier.verify(body, header, now=BASE_TS)

    def test_tampered_body(self, verifier, body):
        """Test body changed after signing is rejected"""
        header = generate_signature_header(body, WEBHOOK_SECRET, timestamp=BASE_TS)
        tampered = body.replace(b"15000", b"1")

        with pytest.raises(SignatureVerificationError):
            verifier.verify(tampered, header, now=BASE_TS)

    def test_timestamp_outside_tolerance(self, verifier, body):
        """Test replayed signature older than the tolerance is rejected"""
        header = generate_signature_header(body, WEBHOOK_SECRET, timestamp=BASE_TS)

        with pytest.raises(SignatureVerificationError, match="tolerance"):
            verifier.verify(body, header, now=BASE_TS + 301)

    def test_timestamp_at_tolerance_edge(self, verifier, body):
        """Test signature exactly at the tolerance is accepted"""
        header = generate_signature_header(body, WEBHOOK_SECRET, timestamp=BASE_TS)

        assert verifier.verify(body, header, now=BASE_TS + 300).id == "evt_1"

    def test_any_matching_signature_accepted(self, verifier, body):
        """Test rotated secrets: one of several v1 signatures matches"""
        good = compute_signature(WEBHOOK_SECRET, BASE_TS, body)
        header = f"t={BASE_TS},v1={'0' * 64},v1={good}"

        assert verifier.verify(body, header, now=BASE_TS).id == "evt_1"

    @pytest.mark.parametrize("header", ["garbage", f"t=abc,v1={'0' * 64}", f"v1={'0' * 64}", f"t={BASE_TS}"])
    def test_unparseable_header(self, verifier, body, header):
        """Test malformed signature headers are rejected"""
        with pytest.raises(SignatureVerificationError):
            verifier.verify(body, header, now=BASE_TS)

    def test_unconfigured_secret(self, body):
        """Test nothing verifies without a secret"""
        header = generate_signature_header(body, WEBHOOK_SECRET, timestamp=BASE_TS)

        with pytest.raises(SignatureVerificationError):
            EventVerifier("").verify(body, header, now=BASE_TS)

    @pytest.mark.parametrize("raw", [
        b"not json",
        b"[1, 2, 3]",
        json.dumps({"id": "evt_1", "type": "x", "created": BASE_TS}).encode(),
        json.dumps({"id": "evt_1", "type": "x", "created": "yesterday", "data": {"object": {}}}).encode(),
        json.dumps({"type": "x", "created": BASE_TS, "data": {"object": {}}}).encode(),
    ])
    def test_malformed_event(self, verifier, raw):
        """Test authentic but malformed bodies are rejected"""
        header = generate_signature_header(raw, WEBHOOK_SECRET, timestamp=BASE_TS)

        with pytest.raises(MalformedEventError):
            verifier.verify(raw, header, now=BASE_TS)

    def test_sdk_rejection_is_mapped(self, verifier, body):
        """Test the SDK's verification error surfaces as a domain error"""
        header = generate_signature_header(body, WEBHOOK_SECRET, timestamp=BASE_TS)
        rejection = stripe.SignatureVerificationError("No signatures found matching the expected signature", header)

        with patch("stripe.WebhookSignature.verify_header", side_effect=rejection) as verify_header:
            with pytest.raises(SignatureVerificationError, match="No signatures found"):
                verifier.verify(body, header, now=BASE_TS)

        verify_header.assert_called_once_with(body.decode("utf-8"), header, WEBHOOK_SECRET)

    def test_non_utf8_body(self, verifier):
        raw = b"\xff\xfe not utf-8"
        header = generate_signature_header(raw, WEBHOOK_SECRET, timestamp=BASE_TS)

        with pytest.raises(MalformedEventError):
            verifier.verify(raw, header, now=BASE_TS)
