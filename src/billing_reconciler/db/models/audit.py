"""
Audit log model - append-only
"""
from sqlalchemy import Column, Integer, String, DateTime, Index
from datetime import datetime
import enum

from ..base import Base, JSONType


class AuditOutcome(str, enum.Enum):
    """Outcome recorded with each audit entry"""
    SUCCESS = "success"
    FAILURE = "failure"


class AuditLog(Base):
    """
    Audit log table - append-only for compliance

    Rows are inserted and never updated or deleted.
    """
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    entity = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=True, index=True)
    outcome = Column(String(20), default=AuditOutcome.SUCCESS.value, nullable=False)
    details = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_log_entity", "entity", "entity_id"),
    )
