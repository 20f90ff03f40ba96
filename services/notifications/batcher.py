"""
Batched applicant notifications for document rejections/referrals.

Reviewers reject documents one by one; the applicant receives a single message
covering every un-notified ledger entry once the batch review is completed.
Scheduling is coalesced per application: a second request while one is pending
is a no-op.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from core.security import SYSTEM_ACTOR_ID
from domain.models import ArtifactKind, IssueType, LedgerStatus
from services.notifications.sink import AuditSink, NotificationSink
from services.persistence.models import Application, LedgerEntry
from services.persistence.postgres import transaction

logger = logging.getLogger(__name__)


def compose_message(entries: list[LedgerEntry], max_attempts: int) -> tuple[str, str]:
    medical = [e for e in entries if e.issue_type == IssueType.MEDICAL_REFERRAL.value]
    if len(entries) == 1:
        title = "Medical Referral Issued" if medical else "Document Needs Correction"
    elif medical:
        title = f"{len(entries)} Documents Need Attention (including medical referrals)"
    else:
        title = f"{len(entries)} Documents Need Correction"

    lines = []
    for e in entries:
        line = f"- {e.artifact_type_id}: {e.reason} (attempt {e.attempt_number} of {max_attempts})"
        if e.issue_type == IssueType.MEDICAL_REFERRAL.value:
            line += f". Please consult {e.doctor_name} at {e.clinic_address}"
        if e.specific_issues:
            line += ". Issues: " + ", ".join(e.specific_issues)
        lines.append(line)
        if e.attempt_number == max_attempts - 1:
            lines.append(f"  Warning: {e.artifact_type_id} has only one attempt left.")

    if medical and len(medical) == len(entries):
        footer = "Medical referrals are cleared in person after consultation; no upload is needed."
    else:
        footer = "Please upload corrected documents from your application page."
    return title, "\n".join(lines + ["", footer])


class RejectionNotificationBatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        notifications: NotificationSink,
        audit: AuditSink,
        ledger,
        max_attempts: int,
        delay_s: float = 30.0,
        autostart: bool = True,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.session_factory = session_factory
        self.notifications = notifications
        self.audit = audit
        self.ledger = ledger
        self.max_attempts = max_attempts
        self.delay_s = delay_s
        self.autostart = autostart
        self.timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: dict[str, str] = {}  # application_id -> requested_by
        self._timers: dict[str, threading.Timer] = {}

    def schedule(self, application_id: str, requested_by: str = SYSTEM_ACTOR_ID) -> bool:
        """Queue a notification pass; False when one is already pending for the application."""
        with self._lock:
            if application_id in self._pending:
                logger.debug("notification pass for %s already pending", application_id)
                return False
            self._pending[application_id] = requested_by
            if self.autostart:
                timer = self.timer_factory(self.delay_s, self._fire, args=(application_id,))
                timer.daemon = True
                self._timers[application_id] = timer
                timer.start()
        logger.info("notification pass scheduled for %s in %.0fs", application_id, self.delay_s)
        return True

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def _fire(self, application_id: str) -> None:
        try:
            self.flush(application_id)
        except Exception:
            # timer thread: nobody else would see it
            logger.exception("notification pass for %s failed", application_id)

    def flush(self, application_id: str) -> int:
        """Send one combined notification; returns the number of entries covered."""
        with self._lock:
            requested_by = self._pending.pop(application_id, SYSTEM_ACTOR_ID)
            self._timers.pop(application_id, None)

        with transaction(self.session_factory) as session:
            app = session.get(Application, application_id)
            if app is None:
                logger.warning("notification pass: application %s vanished", application_id)
                return 0
            entries = self.unsent_entries(session, application_id)
            if not entries:
                logger.info("notification pass for %s: nothing to send", application_id)
                return 0
            title, message = compose_message(entries, self.max_attempts)
            action_ref = (
                None
                if all(e.issue_type == IssueType.MEDICAL_REFERRAL.value for e in entries)
                else f"/applications/{application_id}/documents"
            )
            self.notifications.notify(
                session,
                app.applicant_id,
                "document_rejection_batch",
                title,
                message,
                application_id=application_id,
                action_ref=action_ref,
            )
            self.ledger.mark_notified(session, entries)
            self.audit.record(
                session,
                requested_by,
                "rejection_notification_sent",
                f"{len(entries)} document issue(s) sent to applicant",
                application_id=application_id,
            )
            return len(entries)

    def drain(self) -> int:
        """Flush everything pending right now (tests, shutdown)."""
        total = 0
        for application_id in self.pending():
            with self._lock:
                timer = self._timers.get(application_id)
            if timer is not None:
                timer.cancel()
            total += self.flush(application_id)
        return total

    def unsent_entries(self, session: Session, application_id: str) -> list[LedgerEntry]:
        return list(
            session.scalars(
                select(LedgerEntry)
                .where(LedgerEntry.application_id == application_id)
                .where(LedgerEntry.kind == ArtifactKind.DOCUMENT.value)
                .where(LedgerEntry.notification_sent.is_(False))
                .where(LedgerEntry.was_replaced.is_(False))
                .where(LedgerEntry.status == LedgerStatus.PENDING.value)
                .order_by(LedgerEntry.artifact_type_id, LedgerEntry.attempt_number)
            ).all()
        )


def make_batcher(runtime, autostart: Optional[bool] = None) -> RejectionNotificationBatcher:
    return RejectionNotificationBatcher(
        session_factory=runtime.session_factory,
        notifications=runtime.notifications,
        audit=runtime.audit,
        ledger=runtime.ledger,
        max_attempts=runtime.settings.MAX_DOCUMENT_ATTEMPTS,
        delay_s=runtime.settings.NOTIFICATION_BATCH_DELAY_S,
        autostart=True if autostart is None else autostart,
    )
