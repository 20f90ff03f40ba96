from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from services.persistence.models import ActivityLog, Notification

logger = logging.getLogger(__name__)

MAX_DETAILS = 500


class NotificationSink:
    """Writes notification rows; delivery and read-state are someone else's job."""

    def notify(
        self,
        session: Session,
        recipient_id: str,
        type: str,
        title: str,
        message: str,
        application_id: Optional[str] = None,
        action_ref: Optional[str] = None,
    ) -> Notification:
        row = Notification(
            recipient_id=recipient_id,
            application_id=application_id,
            type=type,
            title=title,
            message=message,
            action_ref=action_ref,
        )
        session.add(row)
        return row

    def notify_many(
        self,
        session: Session,
        recipient_ids: Iterable[str],
        type: str,
        title: str,
        message: str,
        application_id: Optional[str] = None,
        action_ref: Optional[str] = None,
    ) -> int:
        n = 0
        for rid in dict.fromkeys(recipient_ids):  # de-duplicate, keep order
            self.notify(session, rid, type, title, message, application_id, action_ref)
            n += 1
        logger.debug("queued %d '%s' notifications for %s", n, type, application_id)
        return n


class AuditSink:
    """Immutable activity log; one row per state-changing operation."""

    def record(
        self,
        session: Session,
        actor_id: str,
        activity_type: str,
        details: str,
        **related_ids: Any,
    ) -> ActivityLog:
        row = ActivityLog(
            actor_id=actor_id,
            activity_type=activity_type,
            details=details[:MAX_DETAILS],
            related_ids={k: v for k, v in related_ids.items() if v is not None},
        )
        session.add(row)
        return row
