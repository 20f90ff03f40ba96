import pytest
from sqlalchemy import select

from conftest import app_status, new_application, notifications_for, upload
from core.errors import ErrorKind
from domain.models import (
    ApplicationStatus,
    BatchDecision,
    IssueType,
    LedgerStatus,
    ReviewStatus,
)
from services.persistence.models import (
    Artifact,
    DocumentRejectionHistory,
    LedgerEntry,
    PermanentRejection,
)


@pytest.fixture
def app_with_id(engine, applicant):
    app_id = new_application(engine, applicant)
    art_id = upload(engine, app_id, applicant, "valid_id", "ids/front.pdf")
    return app_id, art_id


def reject(engine, art_id, admin, category="blurry_photo"):
    return engine.documents.reject(art_id, category, "photo is blurry", ["face not visible"], admin)


def refer(engine, art_id, admin, doctor="Dr. Reyes"):
    return engine.documents.refer(
        art_id, IssueType.MEDICAL_REFERRAL, "abnormal_xray", "shadow on left lung", [], doctor, None, admin
    )


class TestSubmitAndApprove:
    def test_upload_moves_application_to_verification(self, engine, applicant, app_with_id):
        app_id, _ = app_with_id
        assert app_status(engine, app_id, applicant) is ApplicationStatus.FOR_DOCUMENT_VERIFICATION

    def test_upload_needs_existing_file(self, engine, applicant):
        app_id = new_application(engine, applicant)
        res = engine.documents.submit(app_id, "valid_id", "ids/missing.pdf", None, applicant)
        assert not res.ok
        assert res.kind is ErrorKind.FILE_NOT_FOUND

    def test_approve_all_documents_moves_to_payment(self, engine, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        res = engine.documents.approve(art_id, admin)
        assert res.ok
        assert res.value.review_status is ReviewStatus.APPROVED
        # office workers skip orientation
        assert res.value.application_status is ApplicationStatus.PENDING_PAYMENT

    def test_approve_twice_is_already_reviewed(self, engine, admin, app_with_id):
        _, art_id = app_with_id
        assert engine.documents.approve(art_id, admin).ok
        res = engine.documents.approve(art_id, admin)
        assert res.kind is ErrorKind.ALREADY_REVIEWED

    def test_applicant_cannot_review(self, engine, applicant, app_with_id):
        _, art_id = app_with_id
        res = reject(engine, art_id, applicant)
        assert res.kind is ErrorKind.INSUFFICIENT_ROLE

    def test_system_admin_is_read_only(self, engine, system_admin, app_with_id):
        app_id, art_id = app_with_id
        assert reject(engine, art_id, system_admin).kind is ErrorKind.READ_ONLY_OVERSIGHT
        assert engine.applications.get(app_id, system_admin).ok


class TestRejectionLimit:
    def test_three_strikes_permanently_rejects(self, engine, runtime, applicant, admin, app_with_id):
        app_id, art_id = app_with_id

        first = reject(engine, art_id, admin)
        assert first.ok
        assert first.value.attempt_number == 1
        assert first.value.remaining_attempts == 2
        assert first.value.warning is None
        assert first.value.application_status is ApplicationStatus.DOCUMENTS_NEED_REVISION

        assert engine.documents.resubmit(app_id, "valid_id", "ids/front-v2.pdf", None, applicant).ok
        assert app_status(engine, app_id, applicant) is ApplicationStatus.FOR_DOCUMENT_VERIFICATION

        second = reject(engine, art_id, admin)
        assert second.value.attempt_number == 2
        assert second.value.warning is not None

        assert engine.documents.resubmit(app_id, "valid_id", "ids/front-v3.pdf", None, applicant).ok
        third = reject(engine, art_id, admin)
        assert third.ok
        assert third.value.attempt_number == 3
        assert third.value.permanently_rejected
        assert third.value.review_status is ReviewStatus.REJECTED
        assert third.value.application_status is ApplicationStatus.REJECTED

        with runtime.transaction() as s:
            record = s.scalar(select(PermanentRejection).where(PermanentRejection.application_id == app_id))
            assert record.rejection_type == "automatic"
            assert record.rejected_by == "system"
            assert record.total_document_attempts == 3
            assert record.trigger_artifact_type_id == "valid_id"
            statuses = [e.status for e in s.scalars(select(LedgerEntry).order_by(LedgerEntry.attempt_number))]
        assert statuses == [LedgerStatus.REJECTED.value, LedgerStatus.REJECTED.value, LedgerStatus.PENDING.value]

        fourth = engine.documents.resubmit(app_id, "valid_id", "ids/front.pdf", None, applicant)
        assert not fourth.ok
        assert fourth.kind is ErrorKind.MAX_ATTEMPTS_EXCEEDED
        assert "in-person" in fourth.message

    def test_terminal_notification_has_no_action(self, engine, session_factory, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        for ref in ("ids/front-v2.pdf", "ids/front-v3.pdf"):
            reject(engine, art_id, admin)
            engine.documents.resubmit(app_id, "valid_id", ref, None, applicant)
        reject(engine, art_id, admin)

        final = notifications_for(session_factory, applicant.id, "application_permanently_rejected")
        assert len(final) == 1
        assert final[0].action_ref is None
        admins = {n.recipient_id for n in notifications_for(session_factory, "admin-2")}
        assert admins  # category admins are told too

    def test_legacy_history_counts_toward_cap(self, engine, runtime, admin, app_with_id):
        app_id, art_id = app_with_id
        with runtime.transaction() as s:
            for n in (1, 2):
                s.add(
                    DocumentRejectionHistory(
                        application_id=app_id,
                        document_type_id="valid_id",
                        rejection_category="quality_issue",
                        rejection_reason="before migration",
                        rejected_by="admin-1",
                        attempt_number=n,
                        was_replaced=True,
                        status="resubmitted",
                    )
                )
        res = reject(engine, art_id, admin)
        assert res.value.attempt_number == 3
        assert res.value.permanently_rejected

    def test_rejecting_twice_without_resubmission(self, engine, admin, app_with_id):
        _, art_id = app_with_id
        assert reject(engine, art_id, admin).ok
        again = reject(engine, art_id, admin)
        assert again.kind is ErrorKind.ALREADY_REVIEWED

    def test_unknown_category(self, engine, admin, app_with_id):
        _, art_id = app_with_id
        assert reject(engine, art_id, admin, category="smudged").kind is ErrorKind.INVALID_INPUT

    def test_resubmit_without_rejection(self, engine, applicant, app_with_id):
        app_id, _ = app_with_id
        res = engine.documents.resubmit(app_id, "valid_id", "ids/front-v2.pdf", None, applicant)
        assert res.kind is ErrorKind.NO_OUTSTANDING_REJECTION

    def test_resubmit_someone_elses_application(self, engine, admin, other_applicant, app_with_id):
        app_id, art_id = app_with_id
        reject(engine, art_id, admin)
        res = engine.documents.resubmit(app_id, "valid_id", "ids/front-v2.pdf", None, other_applicant)
        assert res.kind is ErrorKind.INSUFFICIENT_ROLE

    def test_resubmit_marks_entry_replaced(self, engine, runtime, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        reject(engine, art_id, admin)
        res = engine.documents.resubmit(app_id, "valid_id", "ids/front-v2.pdf", "front-v2.pdf", applicant)
        assert res.ok
        assert res.value.review_status is ReviewStatus.PENDING
        with runtime.transaction() as s:
            entry = s.scalar(select(LedgerEntry))
            art = s.get(Artifact, art_id)
            assert entry.was_replaced
            assert entry.replacement_artifact_id == art_id
            assert art.file_ref == "ids/front-v2.pdf"
        again = engine.documents.resubmit(app_id, "valid_id", "ids/front-v3.pdf", None, applicant)
        assert again.kind is ErrorKind.NO_OUTSTANDING_REJECTION

    def test_approving_a_resubmission_closes_the_entry(self, engine, runtime, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        reject(engine, art_id, admin)
        engine.documents.resubmit(app_id, "valid_id", "ids/front-v2.pdf", None, applicant)
        assert engine.documents.approve(art_id, admin).ok
        with runtime.transaction() as s:
            assert s.scalar(select(LedgerEntry)).status == LedgerStatus.APPROVED.value


class TestMedicalReferral:
    def test_referral_requires_doctor(self, engine, admin, app_with_id):
        _, art_id = app_with_id
        assert refer(engine, art_id, admin, doctor="").kind is ErrorKind.INVALID_INPUT

    def test_referral_defaults_clinic_to_onsite_venue(self, engine, runtime, admin, app_with_id):
        _, art_id = app_with_id
        res = refer(engine, art_id, admin)
        assert res.value.review_status is ReviewStatus.REFERRED
        assert res.value.application_status is ApplicationStatus.REFERRED_FOR_MEDICAL_MANAGEMENT
        with runtime.transaction() as s:
            assert s.scalar(select(LedgerEntry)).clinic_address == runtime.settings.ONSITE_VENUE

    def test_referral_is_not_resubmittable(self, engine, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        refer(engine, art_id, admin)
        res = engine.documents.resubmit(app_id, "valid_id", "ids/front-v2.pdf", None, applicant)
        assert res.kind is ErrorKind.NOT_RESUBMITTABLE

    def test_onsite_clearance(self, engine, runtime, session_factory, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        refer(engine, art_id, admin)
        res = engine.documents.approve_after_onsite_verification(art_id, "seen by Dr. Reyes", admin)
        assert res.ok
        assert res.value.review_status is ReviewStatus.APPROVED
        assert res.value.application_status is ApplicationStatus.PENDING_PAYMENT
        with runtime.transaction() as s:
            assert s.scalar(select(LedgerEntry)).status == LedgerStatus.CLEARED.value
        assert notifications_for(session_factory, applicant.id, "medical_referral_cleared")

    def test_onsite_clearance_needs_referral(self, engine, admin, app_with_id):
        _, art_id = app_with_id
        reject(engine, art_id, admin)
        res = engine.documents.approve_after_onsite_verification(art_id, None, admin)
        assert res.kind is ErrorKind.NO_OUTSTANDING_REFERRAL

    def test_inspector_cannot_clear_onsite(self, engine, admin, inspector, app_with_id):
        _, art_id = app_with_id
        refer(engine, art_id, admin)
        res = engine.documents.approve_after_onsite_verification(art_id, None, inspector)
        assert res.kind is ErrorKind.INSUFFICIENT_ROLE


class TestBatchReview:
    @pytest.fixture
    def two_docs(self, engine, applicant, app_with_id):
        app_id, id_doc = app_with_id
        xray = upload(engine, app_id, applicant, "chest_xray", "xray/chest.png")
        return app_id, id_doc, xray

    def test_batch_refused_while_documents_pending(self, engine, admin, two_docs):
        app_id, id_doc, _ = two_docs
        reject(engine, id_doc, admin)
        res = engine.documents.review_batch_complete(app_id, BatchDecision.REJECTED, admin)
        assert res.kind is ErrorKind.INVALID_TRANSITION

    def test_batch_approved_requires_all_approved(self, engine, admin, two_docs):
        app_id, id_doc, xray = two_docs
        engine.documents.approve(id_doc, admin)
        reject(engine, xray, admin, category="wrong_format")
        res = engine.documents.review_batch_complete(app_id, BatchDecision.APPROVED, admin)
        assert res.kind is ErrorKind.INVALID_TRANSITION

    def test_batch_approved_notifies_applicant(self, engine, session_factory, applicant, admin, two_docs):
        app_id, id_doc, xray = two_docs
        engine.documents.approve(id_doc, admin)
        engine.documents.approve(xray, admin)
        res = engine.documents.review_batch_complete(app_id, BatchDecision.APPROVED, admin)
        assert res.value is ApplicationStatus.PENDING_PAYMENT
        assert notifications_for(session_factory, applicant.id, "documents_verified")

    def test_rejected_batch_sends_one_combined_notification(
        self, engine, runtime, session_factory, applicant, admin, two_docs
    ):
        app_id, id_doc, xray = two_docs
        reject(engine, id_doc, admin)
        refer(engine, xray, admin)

        assert engine.documents.review_batch_complete(app_id, BatchDecision.REJECTED, admin).ok
        # a second completion while one pass is pending is coalesced
        assert engine.documents.review_batch_complete(app_id, BatchDecision.REJECTED, admin).ok
        assert engine.batcher.pending() == [app_id]
        assert notifications_for(session_factory, applicant.id) == []

        assert engine.batcher.drain() == 2
        sent = notifications_for(session_factory, applicant.id, "document_rejection_batch")
        assert len(sent) == 1
        assert "valid_id" in sent[0].message and "chest_xray" in sent[0].message
        assert "Dr. Reyes" in sent[0].message

        with runtime.transaction() as s:
            assert all(e.notification_sent for e in s.scalars(select(LedgerEntry)))
            assert all(h.notification_sent for h in s.scalars(select(DocumentRejectionHistory)))
        # nothing left to send
        engine.batcher.schedule(app_id)
        assert engine.batcher.drain() == 0

    def test_rejected_batch_requires_a_rejection(self, engine, admin, two_docs):
        app_id, id_doc, xray = two_docs
        engine.documents.approve(id_doc, admin)
        engine.documents.approve(xray, admin)
        res = engine.documents.review_batch_complete(app_id, BatchDecision.REJECTED, admin)
        assert res.kind is ErrorKind.INVALID_TRANSITION
        assert engine.batcher.pending() == []


class TestStorageFailures:
    def test_storage_outage_rolls_back(self, engine, runtime, storage, admin, app_with_id):
        _, art_id = app_with_id
        storage.fail = OSError("connection reset")
        res = reject(engine, art_id, admin)
        assert res.kind is ErrorKind.STORAGE_UNAVAILABLE
        assert res.retryable
        with runtime.transaction() as s:
            assert s.scalars(select(LedgerEntry)).all() == []
            assert s.get(Artifact, art_id).review_status == ReviewStatus.PENDING.value

    def test_missing_replacement_file(self, engine, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        reject(engine, art_id, admin)
        res = engine.documents.resubmit(app_id, "valid_id", "ids/nope.pdf", None, applicant)
        assert res.kind is ErrorKind.FILE_NOT_FOUND


class TestResetVerification:
    def test_reset_clears_documents_and_ledger(self, engine, runtime, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        reject(engine, art_id, admin)
        res = engine.documents.reset_document_verification(app_id, admin)
        assert res.ok and res.value == 2
        with runtime.transaction() as s:
            assert s.get(Artifact, art_id).review_status == ReviewStatus.PENDING.value
            assert runtime.ledger.count(s, app_id, "valid_id") == 0
        assert app_status(engine, app_id, applicant) is ApplicationStatus.FOR_DOCUMENT_VERIFICATION

    def test_reset_refused_after_permanent_rejection(self, engine, applicant, admin, app_with_id):
        app_id, art_id = app_with_id
        for ref in ("ids/front-v2.pdf", "ids/front-v3.pdf"):
            reject(engine, art_id, admin)
            engine.documents.resubmit(app_id, "valid_id", ref, None, applicant)
        reject(engine, art_id, admin)
        res = engine.documents.reset_document_verification(app_id, admin)
        assert res.kind is ErrorKind.APPLICATION_CLOSED
