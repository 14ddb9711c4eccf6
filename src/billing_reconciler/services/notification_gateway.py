"""
Notifier/Auditor Gateway

Thin adapter over the notification and audit collaborators. Calls made
while an event is being handled are queued and only dispatched once the
event's ledger transaction has committed, each one isolated from the others.
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from ..db.models.audit import AuditOutcome
from ..db.models.notification import Notification, NotificationType, NotificationPriority
from .audit_log_service import AuditLogService

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Abstract notification collaborator"""

    @abstractmethod
    def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        type: str = NotificationType.SYSTEM.value,
        priority: str = NotificationPriority.NORMAL.value,
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Deliver one notification"""
        pass


class DatabaseNotifier(Notifier):
    """Persists notifications for the in-app notification centre"""

    def __init__(self, db: Session):
        self.db = db

    def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        type: str = NotificationType.SYSTEM.value,
        priority: str = NotificationPriority.NORMAL.value,
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        notification = Notification(
            user_id=str(user_id),
            title=title,
            message=message,
            type=type,
            priority=priority,
            action_url=action_url,
            extra_metadata=metadata or {},
        )
        try:
            self.db.add(notification)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Notification '{title}' created for user {user_id}")
        return notification


class NotifierAuditorGateway:
    """
    Queues notifications and audit entries for one unit of work

    Nothing reaches the collaborators until `dispatch()`; `discard()` drops
    the queue when the unit of work rolls back.
    """

    def __init__(self, notifier: Notifier, auditor: AuditLogService):
        self.notifier = notifier
        self.auditor = auditor
        self._pending: List[Tuple[str, Callable[[], Any]]] = []

    @property
    def pending(self) -> List[str]:
        """Descriptions of queued effects"""
        return [name for name, _ in self._pending]

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: str = NotificationType.SYSTEM.value,
        priority: str = NotificationPriority.NORMAL.value,
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._pending.append((
            f"notify:{title}:{user_id}",
            lambda: self.notifier.create_notification(
                user_id=user_id,
                title=title,
                message=message,
                type=type,
                priority=priority,
                action_url=action_url,
                metadata=metadata,
            ),
        ))

    def notify_many(self, user_ids: Iterable[str], title: str, message: str, **kwargs) -> int:
        """Queue the same notification for several recipients"""
        count = 0
        for user_id in user_ids:
            self.notify(user_id, title, message, **kwargs)
            count += 1
        if count == 0:
            logger.warning(f"No recipients configured for notification '{title}'")
        return count

    def audit(
        self,
        action: str,
        entity: str,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        outcome: str = AuditOutcome.SUCCESS.value,
        user_id: Optional[str] = None,
    ) -> None:
        self._pending.append((
            f"audit:{action}",
            lambda: self.auditor.log(
                action=action,
                entity=entity,
                entity_id=entity_id,
                details=details,
                outcome=outcome,
                user_id=user_id,
            ),
        ))

    def audit_now(self, action: str, entity: str, **kwargs) -> bool:
        """Write one audit entry immediately, logging instead of raising"""
        try:
            self.auditor.log(action=action, entity=entity, **kwargs)
            return True
        except Exception as e:
            logger.error(f"Audit entry {action} could not be written: {e}", exc_info=True)
            return False

    def dispatch(self) -> Dict[str, int]:
        """
        Deliver every queued effect

        Returns:
            Dictionary with sent/failed counts
        """
        pending, self._pending = self._pending, []
        stats = {"sent": 0, "failed": 0}

        for name, effect in pending:
            try:
                effect()
                stats["sent"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Gateway effect {name} failed: {e}", exc_info=True)

        if pending:
            logger.debug(f"Gateway dispatch complete: {stats}")
        return stats

    def discard(self) -> int:
        """Drop queued effects without delivering them"""
        dropped = len(self._pending)
        self._pending = []
        return dropped


def get_notification_gateway(db: Session) -> NotifierAuditorGateway:
    """Gateway backed by the database notifier and audit log"""
    return NotifierAuditorGateway(DatabaseNotifier(db), AuditLogService(db))
