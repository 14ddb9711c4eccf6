"""
Webhook intake routes - processor event notifications
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from pydantic import BaseModel
import logging

from .config import config
from .db.engine import get_db
from .db.models.audit import AuditOutcome
from .exceptions import WebhookVerificationError, EventProcessingError
from .metrics import increment_counter
from .services.audit_log_service import AuditAction, AuditLogService
from .services.event_verifier import EventVerifier
from .services.webhook_processor import WebhookProcessor, build_webhook_processor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["webhooks"])


class WebhookAck(BaseModel):
    """Acknowledgement returned to the processor"""
    received: bool = True
    duplicate: bool = False
    outcome: str


def get_event_verifier() -> EventVerifier:
    """Verifier keyed by the configured webhook secret"""
    return EventVerifier(config.WEBHOOK_SECRET, tolerance_seconds=config.WEBHOOK_TOLERANCE_SECONDS)


async def read_raw_body(request: Request) -> bytes:
    """Raw request body, exactly as signed"""
    return await request.body()


def get_webhook_processor(db: Session = Depends(get_db)) -> WebhookProcessor:
    """Processing pipeline bound to the request session"""
    return build_webhook_processor(db)


def _audit_rejection(db: Session, request: Request, error: WebhookVerificationError):
    try:
        AuditLogService(db).log(
            action=AuditAction.WEBHOOK_REJECTED,
            entity="WebhookEvent",
            outcome=AuditOutcome.FAILURE.value,
            details={
                "code": error.code,
                "reason": str(error),
                "client": request.client.host if request.client else None,
            },
        )
    except Exception as e:
        logger.error(f"Failed to audit rejected webhook: {e}", exc_info=True)


@router.post("/webhooks/processor", response_model=WebhookAck)
def processor_webhook(
    request: Request,
    body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
    verifier: EventVerifier = Depends(get_event_verifier),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Processor webhook endpoint

    Verification failures return 400 and are never retried by the processor.
    Processing failures return 500; nothing was committed, so redelivery is safe.
    Duplicates are acknowledged with 200. Sync handler: runs in the threadpool.
    """
    signature = request.headers.get(config.WEBHOOK_SIGNATURE_HEADER)

    try:
        event = verifier.verify(body, signature)
    except WebhookVerificationError as e:
        increment_counter("webhook_rejections_total", labels={"code": e.code})
        _audit_rejection(db, request, e)
        raise

    try:
        result = processor.process(event)
    except EventProcessingError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": "EVENT_PROCESSING_FAILED",
                "message": f"Processing failed for event {e.event_id}",
                "event_type": e.event_type,
            },
        )

    return WebhookAck(duplicate=result.duplicate, outcome=result.outcome)
