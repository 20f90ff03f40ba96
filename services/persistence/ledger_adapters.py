"""
Serialization adapters for the attempt ledger.

The ledger has one write path (``services.review.ledger.AttemptLedger``); each
adapter stores that write in one table shape. Both shapes are written inside the
caller's transaction, so they can never drift apart on a partial write.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from domain.models import (
    LEGACY_CATEGORY_MAP,
    ArtifactKind,
    IssueType,
    LegacyRejectionCategory,
    PAYMENT_ARTIFACT_TYPE,
)
from services.persistence.models import (
    DocumentRejectionHistory,
    LedgerEntry,
    PaymentRejectionHistory,
)


class LedgerAdapter(Protocol):
    name: str

    def count(self, session: Session, application_id: str, artifact_type_id: str) -> int: ...

    def write(self, session: Session, entry: LedgerEntry) -> None: ...

    def sync(self, session: Session, entry: LedgerEntry) -> None: ...

    def delete_for_application(self, session: Session, application_id: str, kind: ArtifactKind) -> int: ...


class CurrentLedgerAdapter:
    """``ledger_entries``: the referral-era shape, canonical for reads."""

    name = "current"

    def count(self, session: Session, application_id: str, artifact_type_id: str) -> int:
        return session.scalar(
            select(func.count(LedgerEntry.id))
            .where(LedgerEntry.application_id == application_id)
            .where(LedgerEntry.artifact_type_id == artifact_type_id)
        ) or 0

    def write(self, session: Session, entry: LedgerEntry) -> None:
        session.add(entry)
        session.flush()

    def sync(self, session: Session, entry: LedgerEntry) -> None:
        session.flush()

    def delete_for_application(self, session: Session, application_id: str, kind: ArtifactKind) -> int:
        res = session.execute(
            delete(LedgerEntry)
            .where(LedgerEntry.application_id == application_id)
            .where(LedgerEntry.kind == kind.value)
        )
        return res.rowcount or 0


def legacy_category(entry: LedgerEntry) -> str:
    if entry.kind == ArtifactKind.PAYMENT.value:
        return entry.category
    if entry.issue_type == IssueType.MEDICAL_REFERRAL.value:
        return LegacyRejectionCategory.MEDICAL_FINDING.value
    return LEGACY_CATEGORY_MAP.get(entry.category, LegacyRejectionCategory.OTHER).value


class LegacyLedgerAdapter:
    """``document_rejection_history`` / ``payment_rejection_history``: the pre-referral shape."""

    name = "legacy"

    def count(self, session: Session, application_id: str, artifact_type_id: str) -> int:
        if artifact_type_id == PAYMENT_ARTIFACT_TYPE:
            stmt = select(func.count(PaymentRejectionHistory.id)).where(
                PaymentRejectionHistory.application_id == application_id
            )
        else:
            stmt = (
                select(func.count(DocumentRejectionHistory.id))
                .where(DocumentRejectionHistory.application_id == application_id)
                .where(DocumentRejectionHistory.document_type_id == artifact_type_id)
            )
        return session.scalar(stmt) or 0

    def write(self, session: Session, entry: LedgerEntry) -> None:
        if entry.kind == ArtifactKind.PAYMENT.value:
            row = PaymentRejectionHistory(
                ledger_entry_id=entry.id,
                application_id=entry.application_id,
                payment_id=entry.artifact_id,
                rejection_category=legacy_category(entry),
                rejection_reason=entry.reason,
                specific_issues=list(entry.specific_issues or []),
                rejected_by=entry.issued_by,
                rejected_at=entry.issued_at,
                attempt_number=entry.attempt_number,
                status=entry.status,
            )
        else:
            row = DocumentRejectionHistory(
                ledger_entry_id=entry.id,
                application_id=entry.application_id,
                document_type_id=entry.artifact_type_id,
                document_upload_id=entry.artifact_id,
                rejected_file_id=entry.file_ref,
                rejection_category=legacy_category(entry),
                rejection_reason=entry.reason,
                specific_issues=list(entry.specific_issues or []),
                doctor_name=entry.doctor_name,
                rejected_by=entry.issued_by,
                rejected_at=entry.issued_at,
                attempt_number=entry.attempt_number,
                status=entry.status,
            )
        session.add(row)
        session.flush()

    def sync(self, session: Session, entry: LedgerEntry) -> None:
        if entry.kind == ArtifactKind.PAYMENT.value:
            row = session.scalar(
                select(PaymentRejectionHistory).where(PaymentRejectionHistory.ledger_entry_id == entry.id)
            )
            if row is None:
                return
            row.replacement_payment_id = entry.replacement_artifact_id
        else:
            row = session.scalar(
                select(DocumentRejectionHistory).where(DocumentRejectionHistory.ledger_entry_id == entry.id)
            )
            if row is None:
                return
            row.replacement_upload_id = entry.replacement_artifact_id
            row.notification_sent = entry.notification_sent
        row.was_replaced = entry.was_replaced
        row.replaced_at = entry.replaced_at
        row.status = entry.status
        session.flush()

    def delete_for_application(self, session: Session, application_id: str, kind: ArtifactKind) -> int:
        model = PaymentRejectionHistory if kind is ArtifactKind.PAYMENT else DocumentRejectionHistory
        res = session.execute(delete(model).where(model.application_id == application_id))
        return res.rowcount or 0
