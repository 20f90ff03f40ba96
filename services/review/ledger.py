"""
Attempt ledger: append-only history of rejections/referrals per artifact type.

Attempt numbers are computed as ``max(legacy_count, current_count) + 1``. The two
shapes were historically written by separate code paths, and taking the larger
count guarantees an attempt number can never move backwards even if one shape
lost a row.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ErrorKind, ReviewError
from domain.models import PAYMENT_ARTIFACT_TYPE, ArtifactKind, IssueType, LedgerStatus
from domain.transitions import assert_ledger_transition
from domain.value_objects import FileMetadata
from services.persistence.ledger_adapters import (
    CurrentLedgerAdapter,
    LedgerAdapter,
    LegacyLedgerAdapter,
)
from services.persistence.models import Artifact, LedgerEntry, new_id, utcnow

logger = logging.getLogger(__name__)


class AttemptLedger:
    def __init__(self, adapters: Optional[Sequence[LedgerAdapter]] = None):
        # the first adapter is canonical for reads
        self.adapters: list[LedgerAdapter] = list(adapters or (CurrentLedgerAdapter(), LegacyLedgerAdapter()))

    def count(self, session: Session, application_id: str, artifact_type_id: str) -> int:
        return max(a.count(session, application_id, artifact_type_id) for a in self.adapters)

    def record_attempt(
        self,
        session: Session,
        artifact: Artifact,
        issue_type: IssueType,
        category: str,
        reason: str,
        issues: Sequence[str],
        issued_by: str,
        doctor_name: Optional[str] = None,
        clinic_address: Optional[str] = None,
        file_meta: Optional[FileMetadata] = None,
    ) -> LedgerEntry:
        attempt = self.count(session, artifact.application_id, artifact.artifact_type_id) + 1
        entry = LedgerEntry(
            id=new_id(),
            application_id=artifact.application_id,
            artifact_type_id=artifact.artifact_type_id,
            artifact_id=artifact.id,
            kind=artifact.kind,
            attempt_number=attempt,
            issue_type=issue_type.value,
            category=category,
            reason=reason,
            specific_issues=list(issues),
            doctor_name=doctor_name,
            clinic_address=clinic_address,
            file_ref=file_meta.file_ref if file_meta else artifact.file_ref,
            file_size=file_meta.size if file_meta else None,
            file_type=file_meta.content_type if file_meta else None,
            issued_by=issued_by,
            issued_at=utcnow(),
            status=LedgerStatus.PENDING.value,
            was_replaced=False,
            notification_sent=False,
        )
        for adapter in self.adapters:
            adapter.write(session, entry)
        logger.info(
            "ledger %s/%s attempt %d (%s:%s) by %s",
            artifact.application_id,
            artifact.artifact_type_id,
            attempt,
            issue_type.value,
            category,
            issued_by,
        )
        return entry

    def current_outstanding(
        self, session: Session, application_id: str, artifact_type_id: str
    ) -> Optional[LedgerEntry]:
        rows = session.scalars(
            select(LedgerEntry)
            .where(LedgerEntry.application_id == application_id)
            .where(LedgerEntry.artifact_type_id == artifact_type_id)
            .where(LedgerEntry.was_replaced.is_(False))
            .where(LedgerEntry.status == LedgerStatus.PENDING.value)
            .order_by(LedgerEntry.attempt_number.desc())
        ).all()
        if len(rows) > 1:
            # should be impossible while every write goes through this class
            logger.error(
                "%d outstanding ledger entries for %s/%s", len(rows), application_id, artifact_type_id
            )
        return rows[0] if rows else None

    def latest(self, session: Session, application_id: str, artifact_type_id: str) -> Optional[LedgerEntry]:
        return session.scalars(
            select(LedgerEntry)
            .where(LedgerEntry.application_id == application_id)
            .where(LedgerEntry.artifact_type_id == artifact_type_id)
            .order_by(LedgerEntry.attempt_number.desc())
            .limit(1)
        ).first()

    def mark_replaced(self, session: Session, entry: LedgerEntry, replacement_artifact_id: str) -> LedgerEntry:
        if entry.was_replaced:
            raise ReviewError(
                ErrorKind.ALREADY_REPLACED,
                "This rejection has already been addressed with a new submission",
            )
        assert_ledger_transition(LedgerStatus(entry.status), LedgerStatus.RESUBMITTED)
        entry.was_replaced = True
        entry.status = LedgerStatus.RESUBMITTED.value
        entry.replacement_artifact_id = replacement_artifact_id
        entry.replaced_at = utcnow()
        self._sync(session, entry)
        return entry

    def mark_terminal(
        self,
        session: Session,
        entry: LedgerEntry,
        outcome: LedgerStatus,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> LedgerEntry:
        if outcome not in {LedgerStatus.APPROVED, LedgerStatus.REJECTED, LedgerStatus.CLEARED}:
            raise ReviewError(ErrorKind.INVALID_INPUT, f"{outcome.value} is not a terminal outcome")
        assert_ledger_transition(LedgerStatus(entry.status), outcome)
        entry.status = outcome.value
        entry.resolved_by = resolved_by
        entry.resolved_at = utcnow()
        entry.resolution_notes = notes
        self._sync(session, entry)
        return entry

    def mark_notified(self, session: Session, entries: Sequence[LedgerEntry]) -> None:
        now = utcnow()
        for entry in entries:
            entry.notification_sent = True
            entry.notification_sent_at = now
            self._sync(session, entry)

    def history(
        self, session: Session, application_id: str, kind: Optional[ArtifactKind] = None
    ) -> list[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.application_id == application_id)
        if kind is not None:
            stmt = stmt.where(LedgerEntry.kind == kind.value)
        stmt = stmt.order_by(LedgerEntry.artifact_type_id, LedgerEntry.attempt_number)
        return list(session.scalars(stmt).all())

    def totals(self, session: Session, application_id: str) -> tuple[int, int]:
        """(document attempts, payment attempts) across every artifact type."""
        type_ids = session.scalars(
            select(Artifact.artifact_type_id).where(Artifact.application_id == application_id)
        ).all()
        logged = session.scalars(
            select(LedgerEntry.artifact_type_id).where(LedgerEntry.application_id == application_id)
        ).all()
        docs = payments = 0
        for type_id in set(type_ids) | set(logged):
            n = self.count(session, application_id, type_id)
            if type_id == PAYMENT_ARTIFACT_TYPE:
                payments += n
            else:
                docs += n
        return docs, payments

    def reset(self, session: Session, application_id: str, kind: ArtifactKind) -> int:
        """Administrative deletion; the only way ledger rows ever disappear."""
        deleted = 0
        for adapter in self.adapters:
            deleted += adapter.delete_for_application(session, application_id, kind)
        logger.warning("ledger reset for %s (%s): %d rows removed", application_id, kind.value, deleted)
        return deleted

    def _sync(self, session: Session, entry: LedgerEntry) -> None:
        for adapter in self.adapters:
            adapter.sync(session, entry)
