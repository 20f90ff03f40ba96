"""Allowed review-status transitions per artifact kind."""

from __future__ import annotations

from core.errors import ErrorKind, ReviewError
from domain.models import ArtifactKind, LedgerStatus, OrientationStatus, ReviewStatus

DOCUMENT_TRANSITIONS: dict[ReviewStatus, set[ReviewStatus]] = {
    ReviewStatus.PENDING: {
        ReviewStatus.APPROVED,
        ReviewStatus.REFERRED,
        ReviewStatus.NEEDS_REVISION,
        ReviewStatus.REJECTED,  # third strike straight from a resubmitted document
    },
    # a later correction of an approval needs a new ledger entry, never an edit
    ReviewStatus.APPROVED: {ReviewStatus.REFERRED, ReviewStatus.NEEDS_REVISION, ReviewStatus.REJECTED},
    ReviewStatus.REFERRED: {ReviewStatus.APPROVED, ReviewStatus.REJECTED},
    ReviewStatus.NEEDS_REVISION: {ReviewStatus.PENDING, ReviewStatus.REJECTED},
    ReviewStatus.REJECTED: set(),
}

PAYMENT_TRANSITIONS: dict[ReviewStatus, set[ReviewStatus]] = {
    ReviewStatus.PENDING: {ReviewStatus.COMPLETE, ReviewStatus.FAILED},
    ReviewStatus.FAILED: {ReviewStatus.PENDING, ReviewStatus.COMPLETE},  # COMPLETE via manual unlock
    ReviewStatus.COMPLETE: set(),
}

LEDGER_TRANSITIONS: dict[LedgerStatus, set[LedgerStatus]] = {
    LedgerStatus.PENDING: {
        LedgerStatus.RESUBMITTED,
        LedgerStatus.APPROVED,
        LedgerStatus.REJECTED,
        LedgerStatus.CLEARED,
    },
    LedgerStatus.RESUBMITTED: {LedgerStatus.APPROVED, LedgerStatus.REJECTED, LedgerStatus.CLEARED},
    LedgerStatus.APPROVED: set(),
    LedgerStatus.REJECTED: set(),
    LedgerStatus.CLEARED: set(),
}

ORIENTATION_TRANSITIONS: dict[OrientationStatus, set[OrientationStatus]] = {
    OrientationStatus.SCHEDULED: {OrientationStatus.CHECKED_IN, OrientationStatus.MISSED, OrientationStatus.EXCUSED},
    OrientationStatus.CHECKED_IN: {OrientationStatus.COMPLETED, OrientationStatus.MISSED, OrientationStatus.EXCUSED},
    OrientationStatus.COMPLETED: set(),
    OrientationStatus.MISSED: {OrientationStatus.SCHEDULED},  # re-booking
    OrientationStatus.EXCUSED: {OrientationStatus.SCHEDULED},
}

# admin overrides may move any record to one of these, whatever its current status
ATTENDANCE_OVERRIDES = frozenset({OrientationStatus.COMPLETED, OrientationStatus.EXCUSED, OrientationStatus.MISSED})


def assert_review_transition(kind: ArtifactKind, old: ReviewStatus, new: ReviewStatus) -> None:
    table = DOCUMENT_TRANSITIONS if kind is ArtifactKind.DOCUMENT else PAYMENT_TRANSITIONS
    if new not in table.get(old, set()):
        raise ReviewError(
            ErrorKind.INVALID_TRANSITION, f"Illegal {kind.value} transition: {old.value} -> {new.value}"
        )


def assert_ledger_transition(old: LedgerStatus, new: LedgerStatus) -> None:
    if new not in LEDGER_TRANSITIONS.get(old, set()):
        raise ReviewError(
            ErrorKind.INVALID_TRANSITION, f"Illegal ledger transition: {old.value} -> {new.value}"
        )


def assert_orientation_transition(old: OrientationStatus, new: OrientationStatus) -> None:
    if new not in ORIENTATION_TRANSITIONS.get(old, set()):
        raise ReviewError(
            ErrorKind.INVALID_TRANSITION, f"Illegal orientation transition: {old.value} -> {new.value}"
        )


def assert_attendance_override(old: OrientationStatus, new: OrientationStatus) -> None:
    if new not in ATTENDANCE_OVERRIDES:
        raise ReviewError(ErrorKind.INVALID_INPUT, f"Attendance cannot be set to {new.value}")
    if new is old:
        raise ReviewError(ErrorKind.INVALID_TRANSITION, f"Attendance is already {old.value}")
