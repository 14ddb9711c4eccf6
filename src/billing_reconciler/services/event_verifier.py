"""
Event Verifier - authenticates inbound processor events

Signature header format: ``t=<unix timestamp>,v1=<hex hmac>[,v1=<hex hmac>...]``.
Signatures are checked by the stripe SDK; freshness is checked here against
an injectable clock.
"""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import stripe
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import MissingSignatureError, SignatureVerificationError, MalformedEventError
from ..utils import from_timestamp

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = stripe.WebhookSignature.EXPECTED_SCHEME
DEFAULT_TOLERANCE_SECONDS = 300


class VerifiedEvent(BaseModel):
    """Typed, authenticated processor event"""
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    payload: Dict[str, Any]
    created_at: datetime
    live_mode: bool = False

    def get(self, key: str, default: Any = None) -> Any:
        """Shortcut into the event's data object"""
        return self.payload.get(key, default)


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 hex digest over the signed payload (tooling and tests)"""
    signed_payload = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def generate_signature_header(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a valid signature header for a body (tooling and tests)"""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(secret, timestamp, body)}"


class EventVerifier:
    """
    Verifies signature and shape of inbound events

    Pure check: no I/O, no state.
    """

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, body: bytes, signature_header: Optional[str], now: Optional[int] = None) -> VerifiedEvent:
        """
        Authenticate a raw body and return the typed event

        Raises:
            MissingSignatureError: header absent or empty
            SignatureVerificationError: mismatch, stale timestamp, bad header
            MalformedEventError: body is not a well-formed event
        """
        if not signature_header or not signature_header.strip():
            raise MissingSignatureError("Missing webhook signature header")

        if not self.secret:
            raise SignatureVerificationError("Webhook secret is not configured")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedEventError("Event body is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, self.secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(str(e)) from e

        timestamp = self._signed_timestamp(signature_header)
        if now is None:
            now = int(time.time())
        if self.tolerance_seconds > 0 and abs(now - timestamp) > self.tolerance_seconds:
            raise SignatureVerificationError(
                f"Timestamp outside the tolerance zone ({abs(now - timestamp)}s > {self.tolerance_seconds}s)"
            )

        return self.parse_event(body)

    @staticmethod
    def _signed_timestamp(header: str) -> int:
        """The ``t`` value of a header the SDK already accepted"""
        for item in header.split(","):
            key, _, value = item.partition("=")
            if key == "t":
                return int(value)
        raise SignatureVerificationError("Signature header has no timestamp")

    @staticmethod
    def parse_event(body: bytes) -> VerifiedEvent:
        """Parse an authenticated body into a VerifiedEvent"""
        try:
            raw = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEventError(f"Event body is not valid JSON: {e}")

        if not isinstance(raw, dict):
            raise MalformedEventError("Event body must be a JSON object")

        data = raw.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise MalformedEventError("Event is missing data.object")

        created = raw.get("created")
        if not isinstance(created, (int, float)) or isinstance(created, bool):
            raise MalformedEventError("Event is missing a numeric created timestamp")

        try:
            return VerifiedEvent(
                id=raw.get("id"),
                type=raw.get("type"),
                payload=data["object"],
                created_at=from_timestamp(created),
                live_mode=bool(raw.get("livemode", False)),
            )
        except ValidationError as e:
            raise MalformedEventError(f"Event is missing required fields: {e.errors()[0]['loc']}")
