"""
Payment Review State Machine.

    Pending -> Complete | Failed
    Failed  -> Pending (resubmission within the grace period)

Reaching the payment attempt cap never rejects an application automatically: it
is locked in ``Under Administrative Review`` until an admin resolves it. With
auto-lock turned off it stays in ``Payment Rejected`` and admins resolve it from
there.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ErrorKind, ReviewError, as_result
from core.security import Action, Actor, require
from domain.models import (
    PAYMENT_ARTIFACT_TYPE,
    AdministrativeReviewDecision,
    ApplicationStatus,
    ArtifactKind,
    ArtifactView,
    FinalRejectionCategory,
    IssueType,
    LedgerStatus,
    PaymentMethod,
    PaymentRejectionCategory,
    ReviewOutcome,
    ReviewStatus,
)
from domain.transitions import assert_review_transition
from services.observability.metrics import timing_metric
from services.persistence.models import Application, Artifact, LedgerEntry
from services.persistence.postgres import lock_application, lock_artifact
from services.review.aggregator import ensure_open

logger = logging.getLogger(__name__)


class PaymentReviewMachine:
    def __init__(self, runtime, aggregator, finalizer):
        self.rt = runtime
        self.aggregator = aggregator
        self.finalizer = finalizer

    @property
    def max_attempts(self) -> int:
        return self.rt.settings.MAX_PAYMENT_ATTEMPTS

    def _load(self, session: Session, artifact_id: str) -> tuple[Application, Artifact]:
        found = session.get(Artifact, artifact_id)
        if found is None or found.kind != ArtifactKind.PAYMENT.value:
            raise ReviewError(ErrorKind.ARTIFACT_NOT_FOUND, f"Payment {artifact_id} not found")
        app = lock_application(session, found.application_id)
        return app, lock_artifact(session, artifact_id)

    def _payment(self, session: Session, application_id: str) -> Optional[Artifact]:
        return session.execute(
            select(Artifact)
            .where(Artifact.application_id == application_id)
            .where(Artifact.artifact_type_id == PAYMENT_ARTIFACT_TYPE)
            .with_for_update()
        ).scalar_one_or_none()

    def _outcome(self, art: Artifact, app: Application, entry: Optional[LedgerEntry] = None, **kw) -> ReviewOutcome:
        return ReviewOutcome(
            artifact_id=art.id,
            application_id=app.id,
            review_status=ReviewStatus(art.review_status),
            application_status=ApplicationStatus(app.status),
            ledger_entry_id=entry.id if entry else None,
            attempt_number=entry.attempt_number if entry else None,
            **kw,
        )

    # --- applicant side ---------------------------------------------------------

    @as_result
    def submit(
        self,
        application_id: str,
        amount: float,
        payment_method: PaymentMethod,
        reference_number: str,
        receipt_ref: str,
        actor: Actor,
    ) -> ArtifactView:
        with timing_metric("payments.submit"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.SUBMIT, app.job_category_id, app.applicant_id)
            existing = self._payment(session, app.id)
            if existing is not None:
                if existing.review_status == ReviewStatus.FAILED.value:
                    # a failed payment is only ever replaced through resubmission
                    self._resubmit(session, app, existing, receipt_ref, reference_number, actor)
                    return ArtifactView.model_validate(existing)
                raise ReviewError(
                    ErrorKind.INVALID_TRANSITION, f"A payment is already {existing.review_status}"
                )
            ensure_open(app)
            if amount is None or amount <= 0:
                raise ReviewError(ErrorKind.INVALID_INPUT, "Payment amount must be positive")
            meta = self.rt.file_metadata(receipt_ref)
            art = Artifact(
                application_id=app.id,
                artifact_type_id=PAYMENT_ARTIFACT_TYPE,
                kind=ArtifactKind.PAYMENT.value,
                file_ref=meta.file_ref,
                review_status=ReviewStatus.PENDING.value,
                amount=amount,
                payment_method=payment_method.value,
                reference_number=reference_number,
                uploaded_at=self.rt.clock(),
            )
            session.add(art)
            session.flush()
            self.rt.audit.record(
                session, actor.id, "payment_submitted",
                f"{payment_method.value} {amount:.2f} ref {reference_number}",
                application_id=app.id, artifact_id=art.id,
            )
            self.aggregator.evaluate(session, app, actor.id)
            return ArtifactView.model_validate(art)

    @as_result
    def resubmit(
        self, application_id: str, receipt_ref: str, reference_number: Optional[str], actor: Actor
    ) -> ReviewOutcome:
        with timing_metric("payments.resubmit"), self.rt.transaction(ErrorKind.ALREADY_REPLACED) as session:
            app = lock_application(session, application_id)
            require(actor, Action.RESUBMIT, app.job_category_id, app.applicant_id)
            art = self._payment(session, app.id)
            if art is None:
                raise ReviewError(ErrorKind.NO_OUTSTANDING_REJECTION, "No payment has been submitted yet")
            entry, count = self._resubmit(session, app, art, receipt_ref, reference_number, actor)
            return self._outcome(
                art,
                app,
                entry,
                remaining_attempts=self.max_attempts - count,
                message="Payment resubmitted for validation",
            )

    def _resubmit(
        self,
        session: Session,
        app: Application,
        art: Artifact,
        receipt_ref: str,
        reference_number: Optional[str],
        actor: Actor,
    ) -> tuple[LedgerEntry, int]:
        require(actor, Action.RESUBMIT, app.job_category_id, app.applicant_id)
        count = self.rt.ledger.count(session, app.id, PAYMENT_ARTIFACT_TYPE)
        if count >= self.max_attempts:
            raise ReviewError(
                ErrorKind.MAX_ATTEMPTS_EXCEEDED,
                f"Maximum of {self.max_attempts} payment attempts reached. "
                "Please settle the payment in person at the health office.",
            )
        if app.status == ApplicationStatus.UNDER_ADMINISTRATIVE_REVIEW.value:
            raise ReviewError(ErrorKind.APPLICATION_LOCKED, "Application is locked for administrative review")
        ensure_open(app)
        if app.payment_deadline is not None and self.rt.clock() > app.payment_deadline:
            raise ReviewError(
                ErrorKind.GRACE_PERIOD_EXPIRED,
                f"The payment grace period ended on {app.payment_deadline:%Y-%m-%d %H:%M} UTC",
            )
        entry = self.rt.ledger.current_outstanding(session, app.id, PAYMENT_ARTIFACT_TYPE)
        if entry is None:
            raise ReviewError(ErrorKind.NO_OUTSTANDING_REJECTION, "The payment has no outstanding rejection")
        meta = self.rt.file_metadata(receipt_ref)

        assert_review_transition(ArtifactKind.PAYMENT, ReviewStatus(art.review_status), ReviewStatus.PENDING)
        art.file_ref = meta.file_ref
        if reference_number:
            art.reference_number = reference_number
        art.review_status = ReviewStatus.PENDING.value
        art.reviewed_by = None
        art.reviewed_at = None
        art.admin_remarks = None
        art.uploaded_at = self.rt.clock()
        self.rt.ledger.mark_replaced(session, entry, art.id)
        app.payment_deadline = None

        self.rt.notifications.notify_many(
            session,
            self.rt.policies.admins_for(session, app.job_category_id),
            "payment_resubmitted",
            "Payment Resubmitted",
            f"Payment for application {app.id} was resubmitted (after attempt {entry.attempt_number}).",
            application_id=app.id,
            action_ref=f"/admin/applications/{app.id}/payment",
        )
        self.rt.audit.record(
            session, actor.id, "payment_resubmitted", f"receipt {meta.file_ref}",
            application_id=app.id, artifact_id=art.id, ledger_entry_id=entry.id,
        )
        self.aggregator.evaluate(session, app, actor.id)
        return entry, count

    # --- review -----------------------------------------------------------------

    @as_result
    def approve(self, artifact_id: str, actor: Actor, remarks: Optional[str] = None) -> ReviewOutcome:
        with timing_metric("payments.approve"), self.rt.transaction() as session:
            app, art = self._load(session, artifact_id)
            require(actor, Action.REVIEW, app.job_category_id)
            ensure_open(app)
            current = ReviewStatus(art.review_status)
            if current is not ReviewStatus.PENDING:
                raise ReviewError(ErrorKind.ALREADY_REVIEWED, f"Payment is already {current.value}")
            self._complete(session, app, art, actor, remarks)
            self.aggregator.evaluate(session, app, actor.id)
            return self._outcome(art, app, message="Payment validated")

    def _complete(
        self, session: Session, app: Application, art: Artifact, actor: Actor, remarks: Optional[str]
    ) -> None:
        assert_review_transition(ArtifactKind.PAYMENT, ReviewStatus(art.review_status), ReviewStatus.COMPLETE)
        art.review_status = ReviewStatus.COMPLETE.value
        art.reviewed_by = actor.id
        art.reviewed_at = self.rt.clock()
        art.admin_remarks = remarks
        app.payment_deadline = None

        previous = self.rt.ledger.latest(session, app.id, PAYMENT_ARTIFACT_TYPE)
        if previous is not None and previous.status in {LedgerStatus.PENDING.value, LedgerStatus.RESUBMITTED.value}:
            outcome = LedgerStatus.APPROVED if previous.was_replaced else LedgerStatus.CLEARED
            self.rt.ledger.mark_terminal(session, previous, outcome, actor.id, remarks)

        self.rt.notifications.notify(
            session,
            app.applicant_id,
            "payment_validated",
            "Payment Validated",
            "Your payment was validated.",
            application_id=app.id,
            action_ref=f"/applications/{app.id}",
        )
        self.rt.audit.record(
            session, actor.id, "payment_validated", remarks or "payment validated",
            application_id=app.id, artifact_id=art.id,
        )

    @as_result
    def reject(
        self,
        artifact_id: str,
        category: PaymentRejectionCategory,
        reason: str,
        issues: Sequence[str],
        actor: Actor,
    ) -> ReviewOutcome:
        if not reason or not reason.strip():
            raise ReviewError(ErrorKind.INVALID_INPUT, "A reason is required")
        with timing_metric("payments.reject"), self.rt.transaction() as session:
            app, art = self._load(session, artifact_id)
            require(actor, Action.REVIEW, app.job_category_id)
            ensure_open(app)
            current = ReviewStatus(art.review_status)
            if current is not ReviewStatus.PENDING:
                raise ReviewError(ErrorKind.ALREADY_REVIEWED, f"Payment is already {current.value}")
            assert_review_transition(ArtifactKind.PAYMENT, current, ReviewStatus.FAILED)

            previous = self.rt.ledger.latest(session, app.id, PAYMENT_ARTIFACT_TYPE)
            if previous is not None and previous.status == LedgerStatus.RESUBMITTED.value:
                self.rt.ledger.mark_terminal(
                    session, previous, LedgerStatus.REJECTED, actor.id, "replacement was also rejected"
                )
            entry = self.rt.ledger.record_attempt(
                session, art, IssueType.PAYMENT_ISSUE, category.value, reason.strip(), issues, actor.id
            )
            now = self.rt.clock()
            art.review_status = ReviewStatus.FAILED.value
            art.reviewed_by = actor.id
            art.reviewed_at = now
            art.admin_remarks = reason.strip()
            app.payment_deadline = now + timedelta(hours=self.rt.settings.GRACE_PERIOD_HOURS)

            remaining = max(self.max_attempts - entry.attempt_number, 0)
            at_cap = entry.attempt_number >= self.max_attempts
            locked = at_cap and self.rt.settings.AUTO_LOCK_ON_MAX_ATTEMPTS
            if at_cap:
                message = (
                    f"Your payment was rejected: {reason.strip()}. The maximum of {self.max_attempts} "
                    "attempts was reached and an administrator will review your application."
                )
            else:
                message = (
                    f"Your payment was rejected: {reason.strip()}. Please resubmit before "
                    f"{app.payment_deadline:%Y-%m-%d %H:%M} UTC ({remaining} attempt(s) left)."
                )
            self.rt.notifications.notify(
                session,
                app.applicant_id,
                "payment_rejected",
                "Payment Rejected",
                message,
                application_id=app.id,
                action_ref=None if at_cap else f"/applications/{app.id}/payment",
            )
            self.rt.ledger.mark_notified(session, [entry])
            self.rt.audit.record(
                session, actor.id, "payment_rejected",
                f"{category.value} - {reason.strip()} (attempt {entry.attempt_number})",
                application_id=app.id, artifact_id=art.id, ledger_entry_id=entry.id,
            )

            if locked:
                self.aggregator.lock(
                    session,
                    app,
                    f"Locked after {entry.attempt_number} rejected payment attempts",
                )
                logger.warning("application %s locked after %d payment rejections", app.id, entry.attempt_number)
            else:
                self.aggregator.evaluate(session, app, actor.id)
            if at_cap:
                self.rt.notifications.notify_many(
                    session,
                    self.rt.policies.admins_for(session, app.job_category_id),
                    "payment_max_attempts",
                    "Payment Attempts Exhausted",
                    f"Application {app.id} reached {self.max_attempts} rejected payments and needs review.",
                    application_id=app.id,
                    action_ref=f"/admin/applications/{app.id}/payment",
                )

            warning = None
            if not at_cap and entry.attempt_number >= self.rt.settings.WARNING_THRESHOLD:
                warning = f"Attempt {entry.attempt_number} of {self.max_attempts}: {remaining} attempt(s) left"
            return self._outcome(
                art,
                app,
                entry,
                remaining_attempts=remaining,
                warning=warning,
                locked=locked,
                message="Payment rejected",
            )

    # --- manual unlock ------------------------------------------------------------

    @as_result
    def resolve_administrative_review(
        self,
        application_id: str,
        decision: AdministrativeReviewDecision,
        remarks: Optional[str],
        actor: Actor,
    ) -> ApplicationStatus:
        with timing_metric("payments.resolve_review"), self.rt.transaction() as session:
            app = lock_application(session, application_id)
            require(actor, Action.ADMINISTER, app.job_category_id)
            locked = app.status == ApplicationStatus.UNDER_ADMINISTRATIVE_REVIEW.value
            # without auto-lock an exhausted payment waits in Payment Rejected instead
            exhausted = (
                app.status == ApplicationStatus.PAYMENT_REJECTED.value
                and self.rt.ledger.count(session, app.id, PAYMENT_ARTIFACT_TYPE) >= self.max_attempts
            )
            if not (locked or exhausted):
                raise ReviewError(ErrorKind.INVALID_TRANSITION, "Application is not under administrative review")

            if decision is AdministrativeReviewDecision.APPROVE_PAYMENT:
                art = self._payment(session, app.id)
                if art is None:
                    raise ReviewError(ErrorKind.ARTIFACT_NOT_FOUND, "Application has no payment")
                self._complete(session, app, art, actor, remarks)
                if locked:
                    status = self.aggregator.unlock(session, app, actor.id)
                else:
                    status = self.aggregator.evaluate(session, app, actor.id)
            else:
                self.finalizer.reject_manually(
                    session,
                    app,
                    FinalRejectionCategory.MAX_PAYMENT_ATTEMPTS,
                    remarks or f"Maximum of {self.max_attempts} payment attempts reached",
                    actor,
                )
                status = ApplicationStatus(app.status)
            self.rt.audit.record(
                session, actor.id, "administrative_review_resolved", f"{decision.value}: {remarks or ''}",
                application_id=app.id,
            )
            return status
