"""
Notification model
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from datetime import datetime
import enum

from ..base import Base, JSONType


class NotificationType(str, enum.Enum):
    """Notification type enum"""
    SYSTEM = "system"
    BILLING = "billing"
    ADMIN = "admin"


class NotificationPriority(str, enum.Enum):
    """Notification priority enum"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Notification(Base):
    """In-app notification for a user or administrator"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(String(2000), nullable=False)
    type = Column(String(20), default=NotificationType.SYSTEM.value, nullable=False)
    priority = Column(String(20), default=NotificationPriority.NORMAL.value, nullable=False)
    action_url = Column(String(500), nullable=True)
    extra_metadata = Column(JSONType, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
    )
