"""
Policy objects injected into the retry manager and dispute workflow
"""
from decimal import Decimal
from typing import List

from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    """Retry & grace-period policy for failed invoice payments"""
    max_retry_attempts: int = Field(3, ge=1)
    backoff_multiplier: int = Field(2, ge=1)
    base_delay_hours: int = Field(24, ge=0)
    grace_period_hours: int = Field(72, ge=0)


class DisputePolicy(BaseModel):
    """Dispute workflow policy"""
    auto_response_enabled: bool = True
    document_collection_enabled: bool = True
    escalation_threshold_amount: Decimal = Field(Decimal("500"), ge=0)
    evidence_collection_days: int = Field(7, ge=0)
    admin_user_ids: List[str] = Field(default_factory=list)
    senior_admin_user_ids: List[str] = Field(default_factory=list)

    # Evidence categories enqueued for every dispute
    evidence_categories: List[str] = Field(default_factory=lambda: [
        "receipt",
        "shipping_documentation",
        "customer_communication",
        "service_documentation",
    ])
