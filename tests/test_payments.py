import pytest
from sqlalchemy import select

from conftest import app_status, new_application, notifications_for, upload
from core.errors import ErrorKind
from domain.models import (
    AdministrativeReviewDecision,
    ApplicationStatus,
    LedgerStatus,
    PaymentMethod,
    PaymentRejectionCategory,
    ReviewStatus,
)
from services.persistence.models import LedgerEntry, PaymentRejectionHistory, PermanentRejection


@pytest.fixture
def paid_app(engine, applicant, admin):
    """An office-worker application with approved documents and a pending payment."""
    app_id = new_application(engine, applicant)
    doc = upload(engine, app_id, applicant, "valid_id", "ids/front.pdf")
    assert engine.documents.approve(doc, admin).ok
    res = engine.payments.submit(app_id, 500.0, PaymentMethod.GCASH, "GC-0001", "receipts/r1.jpg", applicant)
    assert res.ok, res
    return app_id, res.value.id


def reject(engine, payment_id, admin):
    return engine.payments.reject(
        payment_id, PaymentRejectionCategory.AMOUNT_MISMATCH, "paid 450 instead of 500", [], admin
    )


class TestPaymentReview:
    def test_submission_moves_to_validation(self, engine, applicant, paid_app):
        app_id, _ = paid_app
        assert app_status(engine, app_id, applicant) is ApplicationStatus.PAYMENT_VALIDATION

    def test_second_submission_refused(self, engine, applicant, paid_app):
        app_id, _ = paid_app
        res = engine.payments.submit(app_id, 500.0, PaymentMethod.MAYA, "MY-1", "receipts/r2.jpg", applicant)
        assert res.kind is ErrorKind.INVALID_TRANSITION

    def test_approve_completes_payment(self, engine, admin, paid_app):
        _, payment_id = paid_app
        res = engine.payments.approve(payment_id, admin)
        assert res.value.review_status is ReviewStatus.COMPLETE
        assert res.value.application_status is ApplicationStatus.UNDER_REVIEW

    def test_reject_sets_grace_period(self, engine, runtime, clock, applicant, admin, paid_app, session_factory):
        app_id, payment_id = paid_app
        res = reject(engine, payment_id, admin)
        assert res.ok
        assert res.value.review_status is ReviewStatus.FAILED
        assert res.value.application_status is ApplicationStatus.PAYMENT_REJECTED
        app = engine.applications.get(app_id, applicant).value
        assert (app.payment_deadline - clock.now).total_seconds() == 72 * 3600
        with runtime.transaction() as s:
            legacy = s.scalar(select(PaymentRejectionHistory))
            assert legacy.attempt_number == 1
            assert legacy.rejection_category == "amount_mismatch"
        assert notifications_for(session_factory, applicant.id, "payment_rejected")

    def test_resubmission_after_grace_period(self, engine, clock, applicant, admin, paid_app):
        app_id, payment_id = paid_app
        reject(engine, payment_id, admin)
        clock.advance(hours=73)
        res = engine.payments.resubmit(app_id, "receipts/r2.jpg", "GC-0002", applicant)
        assert res.kind is ErrorKind.GRACE_PERIOD_EXPIRED

    def test_submit_routes_failed_payment_to_resubmission(self, engine, runtime, applicant, admin, paid_app):
        app_id, payment_id = paid_app
        reject(engine, payment_id, admin)
        res = engine.payments.submit(app_id, 500.0, PaymentMethod.GCASH, "GC-0002", "receipts/r2.jpg", applicant)
        assert res.ok
        assert res.value.id == payment_id
        assert res.value.review_status is ReviewStatus.PENDING
        with runtime.transaction() as s:
            assert s.scalar(select(LedgerEntry)).status == LedgerStatus.RESUBMITTED.value


class TestPaymentLimit:
    def _exhaust(self, engine, applicant, admin, paid_app):
        app_id, payment_id = paid_app
        outcomes = []
        for receipt in ("receipts/r2.jpg", "receipts/r3.jpg"):
            outcomes.append(reject(engine, payment_id, admin))
            assert engine.payments.resubmit(app_id, receipt, None, applicant).ok
        outcomes.append(reject(engine, payment_id, admin))
        return outcomes

    def test_cap_locks_instead_of_rejecting(self, engine, runtime, session_factory, applicant, admin, paid_app):
        app_id, _ = paid_app
        outcomes = self._exhaust(engine, applicant, admin, paid_app)
        assert [o.value.attempt_number for o in outcomes] == [1, 2, 3]
        assert outcomes[-1].value.locked
        assert outcomes[-1].value.application_status is ApplicationStatus.UNDER_ADMINISTRATIVE_REVIEW
        with runtime.transaction() as s:
            assert s.scalar(select(PermanentRejection)) is None
        for admin_id in ("admin-1", "admin-2"):
            assert notifications_for(session_factory, admin_id, "payment_max_attempts")
        assert not notifications_for(session_factory, "admin-food", "payment_max_attempts")

    def test_resubmission_after_cap(self, engine, applicant, admin, paid_app):
        app_id, _ = paid_app
        self._exhaust(engine, applicant, admin, paid_app)
        res = engine.payments.resubmit(app_id, "receipts/r4.jpg", None, applicant)
        assert res.kind is ErrorKind.MAX_ATTEMPTS_EXCEEDED

    def test_locked_application_refuses_reviews(self, engine, admin, paid_app, applicant):
        _, payment_id = paid_app
        self._exhaust(engine, applicant, admin, paid_app)
        assert engine.payments.approve(payment_id, admin).kind is ErrorKind.APPLICATION_CLOSED

    def test_manual_unlock_approves_payment(self, engine, runtime, applicant, admin, paid_app):
        app_id, _ = paid_app
        self._exhaust(engine, applicant, admin, paid_app)
        res = engine.payments.resolve_administrative_review(
            app_id, AdministrativeReviewDecision.APPROVE_PAYMENT, "verified with bank", admin
        )
        assert res.value is ApplicationStatus.UNDER_REVIEW
        with runtime.transaction() as s:
            last = s.scalar(select(LedgerEntry).order_by(LedgerEntry.attempt_number.desc()))
            assert last.status == LedgerStatus.CLEARED.value

    def test_manual_unlock_can_reject(self, engine, runtime, applicant, admin, paid_app):
        app_id, _ = paid_app
        self._exhaust(engine, applicant, admin, paid_app)
        res = engine.payments.resolve_administrative_review(
            app_id, AdministrativeReviewDecision.REJECT, "receipts were forged", admin
        )
        assert res.value is ApplicationStatus.REJECTED
        with runtime.transaction() as s:
            record = s.scalar(select(PermanentRejection))
            assert record.rejection_type == "manual"
            assert record.trigger_category == "max_payment_attempts"
            assert record.total_payment_attempts == 3
            assert record.rejected_by == admin.id

    def test_without_auto_lock(self, engine, runtime, applicant, admin, paid_app):
        runtime.settings.AUTO_LOCK_ON_MAX_ATTEMPTS = False
        outcomes = self._exhaust(engine, applicant, admin, paid_app)
        assert not outcomes[-1].value.locked
        assert outcomes[-1].value.application_status is ApplicationStatus.PAYMENT_REJECTED

    def test_without_auto_lock_admins_can_resolve(self, engine, runtime, session_factory, applicant, admin, paid_app):
        runtime.settings.AUTO_LOCK_ON_MAX_ATTEMPTS = False
        app_id, _ = paid_app
        self._exhaust(engine, applicant, admin, paid_app)
        assert notifications_for(session_factory, "admin-2", "payment_max_attempts")
        res = engine.payments.resolve_administrative_review(
            app_id, AdministrativeReviewDecision.APPROVE_PAYMENT, "paid at the cashier", admin
        )
        assert res.value is ApplicationStatus.UNDER_REVIEW
        assert app_status(engine, app_id, applicant) is ApplicationStatus.UNDER_REVIEW

    def test_without_auto_lock_admins_can_reject(self, engine, runtime, applicant, admin, paid_app):
        runtime.settings.AUTO_LOCK_ON_MAX_ATTEMPTS = False
        app_id, _ = paid_app
        self._exhaust(engine, applicant, admin, paid_app)
        res = engine.payments.resolve_administrative_review(
            app_id, AdministrativeReviewDecision.REJECT, "no valid receipt after three tries", admin
        )
        assert res.value is ApplicationStatus.REJECTED

    def test_payment_rejected_below_cap_is_not_resolvable(self, engine, admin, paid_app):
        app_id, payment_id = paid_app
        reject(engine, payment_id, admin)
        res = engine.payments.resolve_administrative_review(
            app_id, AdministrativeReviewDecision.APPROVE_PAYMENT, None, admin
        )
        assert res.kind is ErrorKind.INVALID_TRANSITION

    def test_resolve_requires_locked_application(self, engine, admin, paid_app):
        app_id, _ = paid_app
        res = engine.payments.resolve_administrative_review(
            app_id, AdministrativeReviewDecision.APPROVE_PAYMENT, None, admin
        )
        assert res.kind is ErrorKind.INVALID_TRANSITION
