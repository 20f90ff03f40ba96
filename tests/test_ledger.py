"""Attempt ledger: numbering, dual-write and entry lifecycle."""

import pytest
from sqlalchemy import select

from conftest import new_application, upload
from core.errors import ErrorKind, ReviewError
from domain.models import ArtifactKind, IssueType, LedgerStatus
from services.persistence.models import (
    Artifact,
    DocumentRejectionHistory,
    LedgerEntry,
    PaymentRejectionHistory,
)
from services.review.ledger import AttemptLedger


@pytest.fixture
def document(engine, applicant):
    app_id = new_application(engine, applicant)
    art_id = upload(engine, app_id, applicant, "valid_id", "ids/front.pdf")
    return app_id, art_id


def _record(ledger, session, art, category="blurry_photo"):
    return ledger.record_attempt(
        session, art, IssueType.DOCUMENT_ISSUE, category, "photo is blurry", ["face not visible"], "admin-1"
    )


class TestAttemptNumbering:
    def test_attempts_are_gap_free_and_monotonic(self, runtime, document):
        _, art_id = document
        ledger = runtime.ledger
        with runtime.transaction() as s:
            art = s.get(Artifact, art_id)
            numbers = []
            for _ in range(3):
                entry = _record(ledger, s, art)
                numbers.append(entry.attempt_number)
                ledger.mark_replaced(s, entry, art.id)
        assert numbers == [1, 2, 3]

    def test_count_uses_larger_of_both_shapes(self, runtime, document):
        app_id, art_id = document
        with runtime.transaction() as s:
            # rows written before the referral shape existed
            for n in (1, 2):
                s.add(
                    DocumentRejectionHistory(
                        application_id=app_id,
                        document_type_id="valid_id",
                        rejection_category="quality_issue",
                        rejection_reason="old rejection",
                        rejected_by="admin-1",
                        attempt_number=n,
                        was_replaced=True,
                        status="resubmitted",
                    )
                )
        with runtime.transaction() as s:
            art = s.get(Artifact, art_id)
            assert runtime.ledger.count(s, app_id, "valid_id") == 2
            entry = _record(runtime.ledger, s, art)
            assert entry.attempt_number == 3

    def test_every_attempt_is_written_in_both_shapes(self, runtime, document):
        app_id, art_id = document
        with runtime.transaction() as s:
            entry = _record(runtime.ledger, s, s.get(Artifact, art_id), category="expired_id")
            entry_id = entry.id
        with runtime.transaction() as s:
            legacy = s.scalar(
                select(DocumentRejectionHistory).where(DocumentRejectionHistory.ledger_entry_id == entry_id)
            )
            assert legacy is not None
            assert legacy.attempt_number == 1
            # current categories collapse to the legacy basic set
            assert legacy.rejection_category == "expired_document"

    def test_medical_referral_maps_to_medical_finding(self, runtime, document):
        app_id, art_id = document
        with runtime.transaction() as s:
            entry = runtime.ledger.record_attempt(
                s,
                s.get(Artifact, art_id),
                IssueType.MEDICAL_REFERRAL,
                "abnormal_xray",
                "shadow on left lung",
                [],
                "admin-1",
                doctor_name="Dr. Reyes",
                clinic_address="Door 7",
            )
            legacy = s.scalar(
                select(DocumentRejectionHistory).where(DocumentRejectionHistory.ledger_entry_id == entry.id)
            )
            assert legacy.rejection_category == "medical_finding"
            assert legacy.doctor_name == "Dr. Reyes"

    def test_payment_legacy_count_is_per_application(self, runtime, engine, applicant):
        app_id = new_application(engine, applicant)
        with runtime.transaction() as s:
            s.add(
                PaymentRejectionHistory(
                    application_id=app_id,
                    rejection_category="invalid_receipt",
                    rejection_reason="legacy",
                    rejected_by="admin-1",
                    attempt_number=1,
                )
            )
        with runtime.transaction() as s:
            assert runtime.ledger.count(s, app_id, "payment") == 1


class TestEntryLifecycle:
    def test_single_outstanding_entry(self, runtime, document):
        app_id, art_id = document
        ledger = runtime.ledger
        with runtime.transaction() as s:
            art = s.get(Artifact, art_id)
            first = _record(ledger, s, art)
            assert ledger.current_outstanding(s, app_id, "valid_id").id == first.id
            ledger.mark_replaced(s, first, art.id)
            assert ledger.current_outstanding(s, app_id, "valid_id") is None
            second = _record(ledger, s, art)
            assert ledger.current_outstanding(s, app_id, "valid_id").id == second.id

    def test_mark_replaced_twice_fails(self, runtime, document):
        _, art_id = document
        with pytest.raises(ReviewError) as exc:
            with runtime.transaction() as s:
                art = s.get(Artifact, art_id)
                entry = _record(runtime.ledger, s, art)
                runtime.ledger.mark_replaced(s, entry, art.id)
                runtime.ledger.mark_replaced(s, entry, art.id)
        assert exc.value.kind is ErrorKind.ALREADY_REPLACED

    def test_replacement_is_mirrored_to_legacy_row(self, runtime, document):
        _, art_id = document
        with runtime.transaction() as s:
            art = s.get(Artifact, art_id)
            entry = _record(runtime.ledger, s, art)
            runtime.ledger.mark_replaced(s, entry, art.id)
            legacy = s.scalar(
                select(DocumentRejectionHistory).where(DocumentRejectionHistory.ledger_entry_id == entry.id)
            )
            assert legacy.was_replaced is True
            assert legacy.status == LedgerStatus.RESUBMITTED.value
            assert legacy.replacement_upload_id == art.id

    def test_terminal_entries_cannot_move(self, runtime, document):
        _, art_id = document
        with pytest.raises(ReviewError) as exc:
            with runtime.transaction() as s:
                entry = _record(runtime.ledger, s, s.get(Artifact, art_id))
                runtime.ledger.mark_terminal(s, entry, LedgerStatus.CLEARED, "admin-1")
                runtime.ledger.mark_terminal(s, entry, LedgerStatus.APPROVED, "admin-1")
        assert exc.value.kind is ErrorKind.INVALID_TRANSITION

    def test_failed_transaction_leaves_no_rows(self, runtime, document):
        app_id, art_id = document
        with pytest.raises(RuntimeError):
            with runtime.transaction() as s:
                _record(runtime.ledger, s, s.get(Artifact, art_id))
                raise RuntimeError("boom")
        with runtime.transaction() as s:
            assert s.scalars(select(LedgerEntry)).all() == []
            assert s.scalars(select(DocumentRejectionHistory)).all() == []

    def test_reset_removes_both_shapes(self, runtime, document):
        app_id, art_id = document
        with runtime.transaction() as s:
            _record(runtime.ledger, s, s.get(Artifact, art_id))
        with runtime.transaction() as s:
            assert runtime.ledger.reset(s, app_id, ArtifactKind.DOCUMENT) == 2
        with runtime.transaction() as s:
            assert runtime.ledger.count(s, app_id, "valid_id") == 0

    def test_custom_adapter_list(self, runtime, document):
        app_id, art_id = document
        from services.persistence.ledger_adapters import CurrentLedgerAdapter

        ledger = AttemptLedger([CurrentLedgerAdapter()])
        with runtime.transaction() as s:
            _record(ledger, s, s.get(Artifact, art_id))
            assert s.scalars(select(DocumentRejectionHistory)).all() == []
