"""
Document Review State Machine.

    Pending -> Approved | Referred | NeedsRevision
    Referred -> Approved (onsite clearance) | Rejected (attempt cap)
    NeedsRevision -> Pending (resubmission) | Rejected (attempt cap)

Every operation is one transaction: ledger append, artifact update, aggregator
and (at the cap) the finalizer either all commit or none do.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ErrorKind, ReviewError, as_result
from core.security import Action, Actor, require
from domain.models import (
    PAYMENT_ARTIFACT_TYPE,
    ApplicationStatus,
    ArtifactKind,
    ArtifactView,
    BatchDecision,
    DocumentIssueCategory,
    IssueType,
    LedgerStatus,
    MedicalReferralCategory,
    ReviewOutcome,
    ReviewStatus,
)
from domain.transitions import assert_review_transition
from services.observability.metrics import timing_metric
from services.persistence.models import Application, Artifact, LedgerEntry
from services.persistence.postgres import (
    after_commit,
    lock_application,
    lock_artifact,
    lock_artifact_by_type,
)
from services.review.aggregator import ensure_open

logger = logging.getLogger(__name__)

_ALREADY_REJECTED = {ReviewStatus.NEEDS_REVISION, ReviewStatus.REFERRED, ReviewStatus.REJECTED}


class DocumentReviewMachine:
    def __init__(self, runtime, aggregator, finalizer, batcher):
        self.rt = runtime
        self.aggregator = aggregator
        self.finalizer = finalizer
        self.batcher = batcher

    @property
    def max_attempts(self) -> int:
        return self.rt.settings.MAX_DOCUMENT_ATTEMPTS

    # --- loading ----------------------------------------------------------------

    def _load(self, session: Session, artifact_id: str) -> tuple[Application, Artifact]:
        found = session.get(Artifact, artifact_id)
        if found is None or found.kind != ArtifactKind.DOCUMENT.value:
            raise ReviewError(ErrorKind.ARTIFACT_NOT_FOUND, f"Document {artifact_id} not found")
        # application first, then artifact: the same order every operation uses
        app = lock_application(session, found.application_id)
        return app, lock_artifact(session, artifact_id)

    def _documents(self, session: Session, application_id: str) -> list[Artifact]:
        return list(
            session.scalars(
                select(Artifact)
                .where(Artifact.application_id == application_id)
                .where(Artifact.kind == ArtifactKind.DOCUMENT.value)
                .with_for_update()
            ).all()
        )

    def _other_admins(self, session: Session, app: Application, actor: Actor) -> list[str]:
        return [a for a in self.rt.policies.admins_for(session, app.job_category_id) if a != actor.id]

    def _outcome(
        self,
        art: Artifact,
        app: Application,
        entry: Optional[LedgerEntry] = None,
        **kw,
    ) -> ReviewOutcome:
        return ReviewOutcome(
            artifact_id=art.id,
            application_id=app.id,
            review_status=ReviewStatus(art.review_status),
            application_status=ApplicationStatus(app.status),
            ledger_entry_id=entry.id if entry else None,
            attempt_number=entry.attempt_number if entry else None,
            **kw,
        )

    # --- applicant upload ---------------------------------------------------------

    @as_result
    def submit(
        self,
        application_id: str,
        artifact_type_id: str,
        file_ref: str,
        file_name: Optional[str],
        actor: Actor,
    ) -> ArtifactView:
        with timing_metric("documents.submit"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.SUBMIT, app.job_category_id, app.applicant_id)
            ensure_open(app)
            if artifact_type_id == PAYMENT_ARTIFACT_TYPE:
                raise ReviewError(ErrorKind.INVALID_INPUT, "Payments are submitted through the payment flow")
            existing = session.scalar(
                select(Artifact)
                .where(Artifact.application_id == application_id)
                .where(Artifact.artifact_type_id == artifact_type_id)
            )
            if existing is not None:
                raise ReviewError(
                    ErrorKind.INVALID_TRANSITION,
                    f"{artifact_type_id} was already uploaded; use resubmission after a rejection",
                )
            meta = self.rt.file_metadata(file_ref)
            art = Artifact(
                application_id=application_id,
                artifact_type_id=artifact_type_id,
                kind=ArtifactKind.DOCUMENT.value,
                file_ref=meta.file_ref,
                original_file_name=file_name,
                review_status=ReviewStatus.PENDING.value,
                uploaded_at=self.rt.clock(),
            )
            session.add(art)
            session.flush()
            self.rt.audit.record(
                session, actor.id, "document_uploaded", f"{artifact_type_id} uploaded",
                application_id=app.id, artifact_id=art.id,
            )
            self.aggregator.evaluate(session, app, actor.id)
            return ArtifactView.model_validate(art)

    # --- review -----------------------------------------------------------------

    @as_result
    def approve(self, artifact_id: str, actor: Actor, remarks: Optional[str] = None) -> ReviewOutcome:
        with timing_metric("documents.approve"), self.rt.transaction() as session:
            app, art = self._load(session, artifact_id)
            require(actor, Action.REVIEW, app.job_category_id)
            ensure_open(app)
            current = ReviewStatus(art.review_status)
            if current is not ReviewStatus.PENDING:
                raise ReviewError(ErrorKind.ALREADY_REVIEWED, f"Document is already {current.value}")
            assert_review_transition(ArtifactKind.DOCUMENT, current, ReviewStatus.APPROVED)
            art.review_status = ReviewStatus.APPROVED.value
            art.reviewed_by = actor.id
            art.reviewed_at = self.rt.clock()
            art.admin_remarks = remarks

            previous = self.rt.ledger.latest(session, app.id, art.artifact_type_id)
            if previous is not None and previous.status == LedgerStatus.RESUBMITTED.value:
                self.rt.ledger.mark_terminal(session, previous, LedgerStatus.APPROVED, actor.id, remarks)

            self.rt.audit.record(
                session, actor.id, "document_approved", f"{art.artifact_type_id} approved",
                application_id=app.id, artifact_id=art.id,
            )
            self.aggregator.evaluate(session, app, actor.id)
            return self._outcome(art, app, message="Document approved")

    @as_result
    def reject(
        self,
        artifact_id: str,
        category: str,
        reason: str,
        issues: Sequence[str],
        actor: Actor,
    ) -> ReviewOutcome:
        if category not in DocumentIssueCategory._value2member_map_:
            raise ReviewError(ErrorKind.INVALID_INPUT, f"Unknown document issue category '{category}'")
        return self._record_issue(
            artifact_id, IssueType.DOCUMENT_ISSUE, category, reason, issues, None, None, actor
        )

    @as_result
    def refer(
        self,
        artifact_id: str,
        issue_type: IssueType,
        category: str,
        reason: str,
        issues: Sequence[str],
        doctor_name: Optional[str],
        clinic_address: Optional[str],
        actor: Actor,
    ) -> ReviewOutcome:
        if issue_type is IssueType.MEDICAL_REFERRAL:
            if category not in MedicalReferralCategory._value2member_map_:
                raise ReviewError(ErrorKind.INVALID_INPUT, f"Unknown medical referral category '{category}'")
            if not doctor_name or not doctor_name.strip():
                raise ReviewError(ErrorKind.INVALID_INPUT, "A medical referral needs the referring doctor's name")
            clinic_address = (clinic_address or "").strip() or self.rt.settings.ONSITE_VENUE
        elif issue_type is IssueType.DOCUMENT_ISSUE:
            if category not in DocumentIssueCategory._value2member_map_:
                raise ReviewError(ErrorKind.INVALID_INPUT, f"Unknown document issue category '{category}'")
            doctor_name = clinic_address = None
        else:
            raise ReviewError(ErrorKind.INVALID_INPUT, f"{issue_type.value} does not apply to documents")
        return self._record_issue(
            artifact_id, issue_type, category, reason, issues, doctor_name, clinic_address, actor
        )

    def _record_issue(
        self,
        artifact_id: str,
        issue_type: IssueType,
        category: str,
        reason: str,
        issues: Sequence[str],
        doctor_name: Optional[str],
        clinic_address: Optional[str],
        actor: Actor,
    ) -> ReviewOutcome:
        if not reason or not reason.strip():
            raise ReviewError(ErrorKind.INVALID_INPUT, "A reason is required")

        with timing_metric(f"documents.{issue_type.value}"), self.rt.transaction() as session:
            app, art = self._load(session, artifact_id)
            require(actor, Action.REVIEW, app.job_category_id)
            ensure_open(app)
            current = ReviewStatus(art.review_status)
            if current in _ALREADY_REJECTED:
                raise ReviewError(
                    ErrorKind.ALREADY_REVIEWED,
                    f"Document already has an outstanding decision ({current.value})",
                )
            meta = self.rt.file_metadata(art.file_ref)

            previous = self.rt.ledger.latest(session, app.id, art.artifact_type_id)
            if previous is not None and previous.status == LedgerStatus.RESUBMITTED.value:
                self.rt.ledger.mark_terminal(
                    session, previous, LedgerStatus.REJECTED, actor.id, "replacement was also rejected"
                )

            entry = self.rt.ledger.record_attempt(
                session,
                art,
                issue_type,
                category,
                reason.strip(),
                issues,
                actor.id,
                doctor_name=doctor_name,
                clinic_address=clinic_address,
                file_meta=meta,
            )
            art.reviewed_by = actor.id
            art.reviewed_at = self.rt.clock()
            art.admin_remarks = reason.strip()

            if entry.attempt_number >= self.max_attempts:
                assert_review_transition(ArtifactKind.DOCUMENT, current, ReviewStatus.REJECTED)
                art.review_status = ReviewStatus.REJECTED.value
                # the finalizer's terminal message replaces the batched one
                self.rt.ledger.mark_notified(session, [entry])
                self.finalizer.finalize(session, app, art.artifact_type_id, category, reason.strip())
                return self._outcome(
                    art,
                    app,
                    entry,
                    remaining_attempts=0,
                    permanently_rejected=True,
                    message=(
                        f"Maximum attempts ({self.max_attempts}) reached for {art.artifact_type_id}; "
                        "application permanently rejected"
                    ),
                )

            new_status = (
                ReviewStatus.REFERRED if issue_type is IssueType.MEDICAL_REFERRAL else ReviewStatus.NEEDS_REVISION
            )
            assert_review_transition(ArtifactKind.DOCUMENT, current, new_status)
            art.review_status = new_status.value

            label = "referred for medical consultation" if new_status is ReviewStatus.REFERRED else "needs revision"
            self.rt.notifications.notify_many(
                session,
                self._other_admins(session, app, actor),
                f"document_{issue_type.value}",
                "Document Referred" if new_status is ReviewStatus.REFERRED else "Document Needs Revision",
                f"{art.artifact_type_id} for application {app.id} {label} (attempt {entry.attempt_number}).",
                application_id=app.id,
                action_ref=f"/admin/applications/{app.id}",
            )
            self.rt.audit.record(
                session,
                actor.id,
                f"document_{issue_type.value}",
                f"{art.artifact_type_id} {label}: {category} - {reason.strip()} (attempt {entry.attempt_number})",
                application_id=app.id,
                artifact_id=art.id,
                ledger_entry_id=entry.id,
            )
            self.aggregator.evaluate(session, app, actor.id)

            remaining = self.max_attempts - entry.attempt_number
            warning = None
            if entry.attempt_number >= self.rt.settings.WARNING_THRESHOLD:
                warning = (
                    f"Attempt {entry.attempt_number} of {self.max_attempts}: {remaining} attempt(s) left "
                    "before the application is permanently rejected"
                )
            return self._outcome(
                art, app, entry, remaining_attempts=remaining, warning=warning, message=f"Document {label}"
            )

    @as_result
    def approve_after_onsite_verification(
        self, artifact_id: str, notes: Optional[str], actor: Actor
    ) -> ReviewOutcome:
        with timing_metric("documents.onsite_clearance"), self.rt.transaction() as session:
            app, art = self._load(session, artifact_id)
            require(actor, Action.ONSITE_CLEARANCE, app.job_category_id)
            ensure_open(app)
            entry = self.rt.ledger.current_outstanding(session, app.id, art.artifact_type_id)
            if entry is None or entry.issue_type != IssueType.MEDICAL_REFERRAL.value:
                raise ReviewError(
                    ErrorKind.NO_OUTSTANDING_REFERRAL,
                    f"No outstanding medical referral for {art.artifact_type_id}",
                )
            assert_review_transition(ArtifactKind.DOCUMENT, ReviewStatus(art.review_status), ReviewStatus.APPROVED)
            self.rt.ledger.mark_terminal(session, entry, LedgerStatus.CLEARED, actor.id, notes)
            art.review_status = ReviewStatus.APPROVED.value
            art.reviewed_by = actor.id
            art.reviewed_at = self.rt.clock()
            art.admin_remarks = notes

            self.rt.notifications.notify(
                session,
                app.applicant_id,
                "medical_referral_cleared",
                "Medical Referral Cleared",
                f"Your {art.artifact_type_id} was verified in person and approved.",
                application_id=app.id,
                action_ref=f"/applications/{app.id}",
            )
            self.rt.audit.record(
                session, actor.id, "medical_referral_cleared", notes or f"{art.artifact_type_id} cleared onsite",
                application_id=app.id, artifact_id=art.id, ledger_entry_id=entry.id,
            )
            self.aggregator.evaluate(session, app, actor.id)
            return self._outcome(art, app, entry, message="Medical referral cleared after onsite verification")

    # --- resubmission -------------------------------------------------------------

    @as_result
    def resubmit(
        self,
        application_id: str,
        artifact_type_id: str,
        new_file_ref: str,
        file_name: Optional[str],
        actor: Actor,
    ) -> ReviewOutcome:
        with timing_metric("documents.resubmit"), self.rt.transaction(ErrorKind.ALREADY_REPLACED) as session:
            app = lock_application(session, application_id)
            require(actor, Action.RESUBMIT, app.job_category_id, app.applicant_id)

            count = self.rt.ledger.count(session, app.id, artifact_type_id)
            if count >= self.max_attempts:
                raise ReviewError(
                    ErrorKind.MAX_ATTEMPTS_EXCEEDED,
                    f"Maximum of {self.max_attempts} attempts reached for {artifact_type_id}. "
                    "Please visit the health office for in-person verification.",
                )
            ensure_open(app)
            art = lock_artifact_by_type(session, app.id, artifact_type_id)
            entry = self.rt.ledger.current_outstanding(session, app.id, artifact_type_id)
            if entry is None:
                raise ReviewError(
                    ErrorKind.NO_OUTSTANDING_REJECTION, f"{artifact_type_id} has no outstanding rejection"
                )
            if not IssueType(entry.issue_type).resubmittable:
                raise ReviewError(
                    ErrorKind.NOT_RESUBMITTABLE,
                    "Medical referrals are cleared in person after consultation, not by uploading a new file",
                )
            meta = self.rt.file_metadata(new_file_ref)

            assert_review_transition(ArtifactKind.DOCUMENT, ReviewStatus(art.review_status), ReviewStatus.PENDING)
            art.file_ref = meta.file_ref
            art.original_file_name = file_name
            art.review_status = ReviewStatus.PENDING.value
            art.reviewed_by = None
            art.reviewed_at = None
            art.admin_remarks = None
            art.uploaded_at = self.rt.clock()
            self.rt.ledger.mark_replaced(session, entry, art.id)

            self.rt.notifications.notify_many(
                session,
                self.rt.policies.admins_for(session, app.job_category_id),
                "document_resubmitted",
                "Document Resubmitted",
                f"{artifact_type_id} for application {app.id} was resubmitted "
                f"(after attempt {entry.attempt_number}).",
                application_id=app.id,
                action_ref=f"/admin/applications/{app.id}",
            )
            self.rt.audit.record(
                session, actor.id, "document_resubmitted", f"{artifact_type_id} resubmitted",
                application_id=app.id, artifact_id=art.id, ledger_entry_id=entry.id,
            )
            self.aggregator.evaluate(session, app, actor.id)
            return self._outcome(
                art,
                app,
                entry,
                remaining_attempts=self.max_attempts - count,
                message="Document resubmitted for review",
            )

    # --- batch decisions ------------------------------------------------------------

    @as_result
    def review_batch_complete(
        self, application_id: str, decision: BatchDecision, actor: Actor
    ) -> ApplicationStatus:
        with timing_metric("documents.batch_complete"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.ADMINISTER, app.job_category_id)
            ensure_open(app)
            docs = self._documents(session, app.id)
            if not docs:
                raise ReviewError(ErrorKind.INVALID_TRANSITION, "Application has no documents to review")
            statuses = [ReviewStatus(d.review_status) for d in docs]
            pending = statuses.count(ReviewStatus.PENDING)
            if pending:
                raise ReviewError(ErrorKind.INVALID_TRANSITION, f"{pending} document(s) are still pending review")

            if decision is BatchDecision.APPROVED:
                if any(s is not ReviewStatus.APPROVED for s in statuses):
                    raise ReviewError(ErrorKind.INVALID_TRANSITION, "Every document must be approved first")
                status = self.aggregator.evaluate(session, app, actor.id)
                self.rt.notifications.notify(
                    session,
                    app.applicant_id,
                    "documents_verified",
                    "Documents Verified",
                    f"All your documents were verified. Next step: {status.value}.",
                    application_id=app.id,
                    action_ref=f"/applications/{app.id}",
                )
            else:
                if not any(s.is_rejection_family for s in statuses):
                    raise ReviewError(
                        ErrorKind.INVALID_TRANSITION, "No document was rejected or referred in this review"
                    )
                status = self.aggregator.evaluate(session, app, actor.id)
                app_id, actor_id = app.id, actor.id
                after_commit(session, lambda: self.batcher.schedule(app_id, actor_id))

            self.rt.audit.record(
                session, actor.id, "document_review_completed", f"batch decision: {decision.value}",
                application_id=app.id,
            )
            return status

    @as_result
    def reset_document_verification(self, application_id: str, actor: Actor) -> int:
        """Administrative utility: every document back to Pending, document ledger wiped."""
        with timing_metric("documents.reset"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.ADMINISTER, app.job_category_id)
            if self.finalizer.existing(session, app.id) is not None:
                raise ReviewError(ErrorKind.APPLICATION_CLOSED, "Application was permanently rejected")
            ensure_open(app)
            for doc in self._documents(session, app.id):
                doc.review_status = ReviewStatus.PENDING.value
                doc.reviewed_by = None
                doc.reviewed_at = None
                doc.admin_remarks = None
            deleted = self.rt.ledger.reset(session, app.id, ArtifactKind.DOCUMENT)
            self.rt.audit.record(
                session, actor.id, "document_verification_reset", f"{deleted} ledger rows removed",
                application_id=app.id,
            )
            self.aggregator.evaluate(session, app, actor.id)
            return deleted
