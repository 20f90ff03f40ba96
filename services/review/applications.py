"""Application intake, read access and the final approve/reject decision."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select

from core.errors import ErrorKind, ReviewError, as_result
from core.security import Action, Actor, require
from domain.models import (
    ApplicationStatus,
    ApplicationType,
    ApplicationView,
    ArtifactKind,
    ArtifactView,
    FinalRejectionCategory,
    LedgerEntryView,
    PermanentRejectionView,
)
from services.observability.metrics import timing_metric
from services.persistence.models import Application, Artifact
from services.persistence.postgres import lock_application

logger = logging.getLogger(__name__)


class ApplicationService:
    def __init__(self, runtime, aggregator, finalizer):
        self.rt = runtime
        self.aggregator = aggregator
        self.finalizer = finalizer

    @as_result
    def create(
        self,
        job_category_id: str,
        actor: Actor,
        application_type: ApplicationType = ApplicationType.NEW,
        applicant_id: Optional[str] = None,
    ) -> ApplicationView:
        applicant_id = applicant_id or actor.id
        require(actor, Action.SUBMIT, job_category_id, applicant_id)
        with timing_metric("applications.create"), self.rt.transaction() as session:
            # unknown or malformed categories are refused here
            self.rt.policies.get(session, job_category_id)
            app = Application(
                applicant_id=applicant_id,
                job_category_id=job_category_id,
                application_type=application_type.value,
                status=ApplicationStatus.SUBMITTED.value,
                created_at=self.rt.clock(),
                updated_at=self.rt.clock(),
                last_updated_by=actor.id,
            )
            session.add(app)
            session.flush()
            self.rt.audit.record(
                session, actor.id, "application_submitted", f"{application_type.value} application",
                application_id=app.id,
            )
            return ApplicationView.model_validate(app)

    def _readable(self, session, application_id: str, actor: Actor) -> Application:
        app = session.get(Application, application_id)
        if app is None:
            raise ReviewError(ErrorKind.APPLICATION_NOT_FOUND, f"Application {application_id} not found")
        require(actor, Action.READ, app.job_category_id, app.applicant_id)
        return app

    @as_result
    def get(self, application_id: str, actor: Actor) -> ApplicationView:
        with self.rt.transaction() as session:
            return ApplicationView.model_validate(self._readable(session, application_id, actor))

    @as_result
    def artifacts(self, application_id: str, actor: Actor) -> list[ArtifactView]:
        with self.rt.transaction() as session:
            app = self._readable(session, application_id, actor)
            rows = session.scalars(
                select(Artifact).where(Artifact.application_id == app.id).order_by(Artifact.artifact_type_id)
            ).all()
            return [ArtifactView.model_validate(r) for r in rows]

    @as_result
    def history(
        self, application_id: str, actor: Actor, kind: Optional[ArtifactKind] = None
    ) -> list[LedgerEntryView]:
        """Rejection/referral history, oldest attempt first per artifact type."""
        with self.rt.transaction() as session:
            app = self._readable(session, application_id, actor)
            return [LedgerEntryView.model_validate(e) for e in self.rt.ledger.history(session, app.id, kind)]

    @as_result
    def permanent_rejection(self, application_id: str, actor: Actor) -> Optional[PermanentRejectionView]:
        with self.rt.transaction() as session:
            app = self._readable(session, application_id, actor)
            record = self.finalizer.existing(session, app.id)
            return PermanentRejectionView.model_validate(record) if record else None

    @as_result
    def finalize_application(
        self,
        application_id: str,
        decision: ApplicationStatus,
        remarks: Optional[str],
        actor: Actor,
        rejection_category: Optional[FinalRejectionCategory] = None,
    ) -> ApplicationStatus:
        """Approve or reject an application that has cleared every stage."""
        with timing_metric("applications.finalize"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.ADMINISTER, app.job_category_id)
            if app.status != ApplicationStatus.UNDER_REVIEW.value:
                raise ReviewError(
                    ErrorKind.INVALID_TRANSITION,
                    f"Only applications Under Review can be finalized (current: {app.status})",
                )
            if decision is ApplicationStatus.APPROVED:
                self.aggregator.freeze(session, app, ApplicationStatus.APPROVED, remarks, actor.id)
                self.rt.notifications.notify(
                    session,
                    app.applicant_id,
                    "application_approved",
                    "Application Approved",
                    "Your health card application has been approved.",
                    application_id=app.id,
                    action_ref=f"/applications/{app.id}",
                )
                self.rt.audit.record(
                    session, actor.id, "application_approved", remarks or "approved", application_id=app.id
                )
            elif decision is ApplicationStatus.REJECTED:
                self.finalizer.reject_manually(
                    session, app, rejection_category or FinalRejectionCategory.OTHER, remarks or "", actor
                )
            else:
                raise ReviewError(ErrorKind.INVALID_INPUT, "Decision must be Approved or Rejected")
            return ApplicationStatus(app.status)
