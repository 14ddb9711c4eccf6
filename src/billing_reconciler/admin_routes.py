"""
Admin routes for refunds and dispute reporting
Protected by the X-Admin-Key header
"""
from fastapi import APIRouter, Depends, HTTPException, status, Header
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from decimal import Decimal
import hmac
import logging

from .config import config
from .db.engine import get_db
from .db.models.payment import RefundReason
from .exceptions import RefundError, ProcessorError
from .services.dispute_service import get_dispute_service
from .services.notification_gateway import get_notification_gateway
from .services.refund_service import get_refund_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["Admin"])


class RefundRequest(BaseModel):
    """Request to refund a payment"""
    payment_intent_id: str = Field(..., min_length=1, description="Processor payment intent to refund")
    amount: Optional[Decimal] = Field(None, gt=0, description="Amount in major units; omit for the full remaining balance")
    reason: RefundReason = Field(RefundReason.REQUESTED_BY_CUSTOMER, description="Refund reason")
    requested_by: Optional[str] = Field(None, max_length=100, description="Admin user requesting the refund")


class RefundResponse(BaseModel):
    """Refund response"""
    id: int
    processor_refund_id: Optional[str]
    payment_intent_id: str
    amount: str
    currency: str
    reason: str
    status: str


async def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> str:
    """
    Require the configured admin API key

    Raises:
        HTTPException: 503 when no key is configured, 403 on mismatch
    """
    if not config.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured"
        )
    if not x_admin_key or not hmac.compare_digest(x_admin_key, config.ADMIN_API_KEY):
        logger.warning("Rejected admin request with missing or invalid X-Admin-Key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return x_admin_key


@router.post("/refunds", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
def create_refund(
    request: RefundRequest,
    _: str = Depends(require_admin_key),
    db: Session = Depends(get_db)
):
    """Refund a succeeded payment through the processor"""
    service = get_refund_service(db, get_notification_gateway(db))

    try:
        refund = service.create_refund(
            request.payment_intent_id,
            amount=request.amount,
            reason=request.reason.value,
            requested_by=request.requested_by,
        )
    except RefundError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProcessorError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "PROCESSOR_ERROR", "message": f"Processor rejected the refund: {e}"},
        )

    return RefundResponse(
        id=refund.id,
        processor_refund_id=refund.processor_refund_id,
        payment_intent_id=request.payment_intent_id,
        amount=str(refund.amount),
        currency=refund.currency,
        reason=refund.reason,
        status=refund.status,
    )


@router.get("/disputes/stats")
def dispute_stats(
    _: str = Depends(require_admin_key),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Dispute counts, escalations and open evidence tasks"""
    return get_dispute_service(db, get_notification_gateway(db)).get_dispute_stats()
