"""
Permanent Rejection Finalizer.

Terminal and irreversible: once a ``permanent_rejections`` row exists for an
application nothing in the review engine moves it out of ``Rejected``.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ErrorKind, ReviewError
from core.security import SYSTEM_ACTOR_ID, Actor
from domain.models import ApplicationStatus, FinalRejectionCategory
from services.persistence.models import Application, PermanentRejection

logger = logging.getLogger(__name__)

AUTOMATIC = "automatic"
MANUAL = "manual"


class PermanentRejectionFinalizer:
    def __init__(self, runtime, aggregator):
        self.rt = runtime
        self.aggregator = aggregator

    def existing(self, session: Session, application_id: str) -> Optional[PermanentRejection]:
        return session.scalar(
            select(PermanentRejection).where(PermanentRejection.application_id == application_id)
        )

    def finalize(
        self,
        session: Session,
        app: Application,
        trigger_artifact_type_id: str,
        trigger_category: str,
        reason: str,
    ) -> PermanentRejection:
        """Automatic rejection after the document attempt cap was reached."""
        max_attempts = self.rt.settings.MAX_DOCUMENT_ATTEMPTS
        remark = (
            f"Automatically rejected: maximum attempts ({max_attempts}) reached for "
            f"{trigger_artifact_type_id}. Last issue: {reason}"
        )
        message = (
            f"Your application has been permanently rejected because the {trigger_artifact_type_id} "
            f"document was rejected {max_attempts} times. Please submit a new application "
            "or visit the health office for assistance."
        )
        return self._write(
            session,
            app,
            rejection_type=AUTOMATIC,
            trigger_artifact_type_id=trigger_artifact_type_id,
            trigger_category=trigger_category,
            reason=reason,
            rejected_by=SYSTEM_ACTOR_ID,
            remark=remark,
            applicant_message=message,
        )

    def reject_manually(
        self,
        session: Session,
        app: Application,
        category: FinalRejectionCategory,
        reason: str,
        actor: Actor,
    ) -> PermanentRejection:
        if not reason or not reason.strip():
            raise ReviewError(ErrorKind.INVALID_INPUT, "A rejection reason is required")
        message = (
            "Your application has been rejected after administrative review. "
            f"Reason: {reason}. Please submit a new application if you wish to reapply."
        )
        return self._write(
            session,
            app,
            rejection_type=MANUAL,
            trigger_artifact_type_id=None,
            trigger_category=category.value,
            reason=reason,
            rejected_by=actor.id,
            remark=f"Rejected by administrator: {reason}",
            applicant_message=message,
        )

    def _write(
        self,
        session: Session,
        app: Application,
        rejection_type: str,
        trigger_artifact_type_id: Optional[str],
        trigger_category: str,
        reason: str,
        rejected_by: str,
        remark: str,
        applicant_message: str,
    ) -> PermanentRejection:
        prior = self.existing(session, app.id)
        if prior is not None:
            logger.info("application %s already permanently rejected; keeping %s", app.id, prior.id)
            return prior

        docs, payments = self.rt.ledger.totals(session, app.id)
        record = PermanentRejection(
            application_id=app.id,
            applicant_id=app.applicant_id,
            job_category_id=app.job_category_id,
            trigger_artifact_type_id=trigger_artifact_type_id,
            trigger_category=trigger_category,
            rejection_type=rejection_type,
            reason=reason,
            total_document_attempts=docs,
            total_payment_attempts=payments,
            rejected_by=rejected_by,
            rejected_at=self.rt.clock(),
        )
        session.add(record)
        session.flush()

        self.aggregator.freeze(session, app, ApplicationStatus.REJECTED, remark, rejected_by)

        # terminal: no action link for the applicant
        self.rt.notifications.notify(
            session,
            app.applicant_id,
            "application_permanently_rejected",
            "Application Permanently Rejected",
            applicant_message,
            application_id=app.id,
        )
        admins = [a for a in self.rt.policies.admins_for(session, app.job_category_id) if a != rejected_by]
        self.rt.notifications.notify_many(
            session,
            admins,
            "application_permanently_rejected",
            "Application Permanently Rejected",
            f"Application {app.id} was permanently rejected ({rejection_type}: {trigger_category}).",
            application_id=app.id,
            action_ref=f"/admin/applications/{app.id}",
        )
        self.rt.audit.record(
            session,
            rejected_by,
            "application_permanently_rejected",
            f"{rejection_type} rejection ({trigger_category}); "
            f"{docs} document / {payments} payment attempts. {reason}",
            application_id=app.id,
            artifact_type_id=trigger_artifact_type_id,
        )
        logger.warning(
            "application %s permanently rejected (%s, %s) by %s",
            app.id,
            rejection_type,
            trigger_category,
            rejected_by,
        )
        return record
