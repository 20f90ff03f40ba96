"""
Application Status Aggregator.

The single place that writes ``applications.status`` and
``applications.orientation_completed``. State machines change artifacts and call
``evaluate``; the application status is always derived from those artifacts, the
orientation record and the category policy.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ErrorKind, ReviewError
from core.security import SYSTEM_ACTOR_ID
from domain.models import (
    ApplicationStatus,
    ArtifactKind,
    OrientationStatus,
    ReviewStatus,
)
from services.persistence.models import Application, Artifact, Orientation

logger = logging.getLogger(__name__)

_BOOKED = {OrientationStatus.SCHEDULED.value, OrientationStatus.CHECKED_IN.value}


def ensure_open(app: Application) -> None:
    """Refuse any change to an application whose status is final."""
    status = ApplicationStatus(app.status)
    if status.is_frozen:
        raise ReviewError(ErrorKind.APPLICATION_CLOSED, f"Application is {status.value}; no further changes allowed")


class ApplicationStatusAggregator:
    def __init__(self, runtime):
        self.rt = runtime

    # --- derivation -------------------------------------------------------------

    def derive(self, session: Session, app: Application) -> ApplicationStatus:
        current = ApplicationStatus(app.status)
        if current.is_frozen:
            return current

        artifacts = session.scalars(select(Artifact).where(Artifact.application_id == app.id)).all()
        docs = [ReviewStatus(a.review_status) for a in artifacts if a.kind == ArtifactKind.DOCUMENT.value]
        payment = next((a for a in artifacts if a.kind == ArtifactKind.PAYMENT.value), None)
        orientation = session.scalar(select(Orientation).where(Orientation.application_id == app.id))
        booked = orientation is not None and orientation.status in _BOOKED

        if not docs:
            return ApplicationStatus.SUBMITTED
        if ReviewStatus.REFERRED in docs:
            return ApplicationStatus.REFERRED_FOR_MEDICAL_MANAGEMENT
        if ReviewStatus.NEEDS_REVISION in docs or ReviewStatus.REJECTED in docs:
            return ApplicationStatus.DOCUMENTS_NEED_REVISION
        if ReviewStatus.PENDING in docs:
            return ApplicationStatus.SCHEDULED if booked else ApplicationStatus.FOR_DOCUMENT_VERIFICATION

        policy = self.rt.policies.get(session, app.job_category_id)
        if policy.require_orientation and not app.orientation_completed:
            return ApplicationStatus.SCHEDULED if booked else ApplicationStatus.FOR_ORIENTATION

        if payment is None:
            return ApplicationStatus.PENDING_PAYMENT
        pstatus = ReviewStatus(payment.review_status)
        if pstatus is ReviewStatus.PENDING:
            return ApplicationStatus.PAYMENT_VALIDATION
        if pstatus is ReviewStatus.FAILED:
            return ApplicationStatus.PAYMENT_REJECTED
        return ApplicationStatus.UNDER_REVIEW

    def evaluate(
        self, session: Session, app: Application, actor_id: str = SYSTEM_ACTOR_ID
    ) -> ApplicationStatus:
        """Recompute and persist the status; writes nothing when it is unchanged."""
        new = self.derive(session, app)
        if new.value != app.status:
            self._write(app, new, actor_id)
        return new

    # --- explicit transitions ---------------------------------------------------

    def lock(self, session: Session, app: Application, remarks: str, actor_id: str = SYSTEM_ACTOR_ID) -> None:
        self._write(app, ApplicationStatus.UNDER_ADMINISTRATIVE_REVIEW, actor_id, remarks)

    def unlock(self, session: Session, app: Application, actor_id: str) -> ApplicationStatus:
        if app.status != ApplicationStatus.UNDER_ADMINISTRATIVE_REVIEW.value:
            raise ReviewError(ErrorKind.INVALID_TRANSITION, "Application is not under administrative review")
        # thaw first, otherwise derive() returns the frozen status unchanged
        app.status = ApplicationStatus.UNDER_REVIEW.value
        new = self.derive(session, app)
        self._write(app, new, actor_id)
        return new

    def freeze(
        self,
        session: Session,
        app: Application,
        status: ApplicationStatus,
        remarks: Optional[str],
        actor_id: str,
    ) -> None:
        if status not in {ApplicationStatus.APPROVED, ApplicationStatus.REJECTED}:
            raise ReviewError(ErrorKind.INVALID_TRANSITION, f"{status.value} is not a final status")
        self._write(app, status, actor_id, remarks)

    def set_orientation_completed(
        self, session: Session, app: Application, completed: bool, actor_id: str
    ) -> ApplicationStatus:
        if app.orientation_completed != completed:
            app.orientation_completed = completed
            app.updated_at = self.rt.clock()
        return self.evaluate(session, app, actor_id)

    def _write(
        self, app: Application, status: ApplicationStatus, actor_id: str, remarks: Optional[str] = None
    ) -> None:
        logger.info("application %s: %s -> %s (by %s)", app.id, app.status, status.value, actor_id)
        app.status = status.value
        app.updated_at = self.rt.clock()
        app.last_updated_by = actor_id
        if remarks is not None:
            app.admin_remarks = remarks
