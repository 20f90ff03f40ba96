from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field


class ApplicationStatus(str, Enum):
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "Under Review"
    FOR_DOCUMENT_VERIFICATION = "For Document Verification"
    DOCUMENTS_NEED_REVISION = "Documents Need Revision"
    REFERRED_FOR_MEDICAL_MANAGEMENT = "Referred for Medical Management"
    SCHEDULED = "Scheduled"
    FOR_ORIENTATION = "For Orientation"
    PENDING_PAYMENT = "Pending Payment"
    PAYMENT_VALIDATION = "Payment Validation"
    PAYMENT_REJECTED = "Payment Rejected"
    UNDER_ADMINISTRATIVE_REVIEW = "Under Administrative Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def is_frozen(self) -> bool:
        return self in FROZEN_STATUSES


FROZEN_STATUSES = {
    ApplicationStatus.APPROVED,
    ApplicationStatus.REJECTED,
    ApplicationStatus.UNDER_ADMINISTRATIVE_REVIEW,
}


class ApplicationType(str, Enum):
    NEW = "New"
    RENEW = "Renew"


class ArtifactKind(str, Enum):
    DOCUMENT = "document"
    PAYMENT = "payment"


PAYMENT_ARTIFACT_TYPE = "payment"


class ReviewStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REFERRED = "Referred"
    NEEDS_REVISION = "NeedsRevision"
    REJECTED = "Rejected"
    COMPLETE = "Complete"
    FAILED = "Failed"

    @property
    def is_rejection_family(self) -> bool:
        return self in {ReviewStatus.REFERRED, ReviewStatus.NEEDS_REVISION, ReviewStatus.REJECTED}


class LedgerStatus(str, Enum):
    PENDING = "pending"
    RESUBMITTED = "resubmitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLEARED = "cleared"


class IssueType(str, Enum):
    MEDICAL_REFERRAL = "medical_referral"
    DOCUMENT_ISSUE = "document_issue"
    PAYMENT_ISSUE = "payment_issue"

    @property
    def resubmittable(self) -> bool:
        return self is not IssueType.MEDICAL_REFERRAL


class MedicalReferralCategory(str, Enum):
    ABNORMAL_XRAY = "abnormal_xray"
    ELEVATED_URINALYSIS = "elevated_urinalysis"
    POSITIVE_STOOL = "positive_stool"
    POSITIVE_DRUG_TEST = "positive_drug_test"
    NEURO_EXAM_FAILED = "neuro_exam_failed"
    HEPATITIS_CONSULTATION = "hepatitis_consultation"
    OTHER_MEDICAL_CONCERN = "other_medical_concern"


class DocumentIssueCategory(str, Enum):
    INVALID_ID = "invalid_id"
    EXPIRED_ID = "expired_id"
    BLURRY_PHOTO = "blurry_photo"
    WRONG_FORMAT = "wrong_format"
    MISSING_INFO = "missing_info"
    QUALITY_ISSUE = "quality_issue"
    WRONG_DOCUMENT = "wrong_document"
    EXPIRED_DOCUMENT = "expired_document"
    INCOMPLETE_DOCUMENT = "incomplete_document"
    INVALID_DOCUMENT = "invalid_document"
    FORMAT_ISSUE = "format_issue"
    OTHER = "other"


class LegacyRejectionCategory(str, Enum):
    """Categories understood by the older rejection-history shape."""

    QUALITY_ISSUE = "quality_issue"
    WRONG_DOCUMENT = "wrong_document"
    EXPIRED_DOCUMENT = "expired_document"
    INCOMPLETE_DOCUMENT = "incomplete_document"
    INVALID_DOCUMENT = "invalid_document"
    FORMAT_ISSUE = "format_issue"
    MEDICAL_FINDING = "medical_finding"
    OTHER = "other"


LEGACY_CATEGORY_MAP: dict[str, LegacyRejectionCategory] = {
    DocumentIssueCategory.INVALID_ID.value: LegacyRejectionCategory.INVALID_DOCUMENT,
    DocumentIssueCategory.EXPIRED_ID.value: LegacyRejectionCategory.EXPIRED_DOCUMENT,
    DocumentIssueCategory.BLURRY_PHOTO.value: LegacyRejectionCategory.QUALITY_ISSUE,
    DocumentIssueCategory.WRONG_FORMAT.value: LegacyRejectionCategory.FORMAT_ISSUE,
    DocumentIssueCategory.MISSING_INFO.value: LegacyRejectionCategory.INCOMPLETE_DOCUMENT,
    DocumentIssueCategory.QUALITY_ISSUE.value: LegacyRejectionCategory.QUALITY_ISSUE,
    DocumentIssueCategory.WRONG_DOCUMENT.value: LegacyRejectionCategory.WRONG_DOCUMENT,
    DocumentIssueCategory.EXPIRED_DOCUMENT.value: LegacyRejectionCategory.EXPIRED_DOCUMENT,
    DocumentIssueCategory.INCOMPLETE_DOCUMENT.value: LegacyRejectionCategory.INCOMPLETE_DOCUMENT,
    DocumentIssueCategory.INVALID_DOCUMENT.value: LegacyRejectionCategory.INVALID_DOCUMENT,
    DocumentIssueCategory.FORMAT_ISSUE.value: LegacyRejectionCategory.FORMAT_ISSUE,
    DocumentIssueCategory.OTHER.value: LegacyRejectionCategory.OTHER,
}


class PaymentRejectionCategory(str, Enum):
    INVALID_RECEIPT = "invalid_receipt"
    AMOUNT_MISMATCH = "amount_mismatch"
    UNREADABLE_RECEIPT = "unreadable_receipt"
    REFERENCE_NOT_FOUND = "reference_not_found"
    DUPLICATE_PAYMENT = "duplicate_payment"
    OTHER = "other"


class PaymentMethod(str, Enum):
    GCASH = "Gcash"
    MAYA = "Maya"
    BARANGAY_HALL = "BaranggayHall"
    CITY_HALL = "CityHall"


class FinalRejectionCategory(str, Enum):
    MAX_DOCUMENT_ATTEMPTS = "max_attempts_reached"
    MAX_PAYMENT_ATTEMPTS = "max_payment_attempts"
    FRAUD_SUSPECTED = "fraud_suspected"
    INCOMPLETE_INFORMATION = "incomplete_information"
    DOES_NOT_MEET_REQUIREMENTS = "does_not_meet_requirements"
    DUPLICATE_APPLICATION = "duplicate_application"
    OTHER = "other"


class OrientationStatus(str, Enum):
    SCHEDULED = "Scheduled"
    CHECKED_IN = "CheckedIn"
    COMPLETED = "Completed"
    MISSED = "Missed"
    EXCUSED = "Excused"


class BatchDecision(str, Enum):
    APPROVED = "Approved"
    REJECTED = "Rejected"


class AdministrativeReviewDecision(str, Enum):
    APPROVE_PAYMENT = "approve_payment"
    REJECT = "reject"


# --- read models ---------------------------------------------------------------


class _ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ApplicationView(_ReadModel):
    id: str
    applicant_id: str
    job_category_id: str
    application_type: ApplicationType
    status: ApplicationStatus
    orientation_completed: bool = False
    payment_deadline: Optional[datetime] = None
    admin_remarks: Optional[str] = None
    last_updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class ArtifactView(_ReadModel):
    id: str
    application_id: str
    artifact_type_id: str
    kind: ArtifactKind
    review_status: ReviewStatus
    file_ref: Optional[str] = None
    admin_remarks: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class LedgerEntryView(_ReadModel):
    id: str
    application_id: str
    artifact_type_id: str
    attempt_number: int
    issue_type: IssueType
    category: str
    reason: str
    specific_issues: List[str] = []
    doctor_name: Optional[str] = None
    clinic_address: Optional[str] = None
    issued_by: str
    issued_at: datetime
    status: LedgerStatus
    was_replaced: bool = False
    replacement_artifact_id: Optional[str] = None


class PermanentRejectionView(_ReadModel):
    application_id: str
    applicant_id: str
    job_category_id: str
    trigger_artifact_type_id: Optional[str] = None
    trigger_category: str
    rejection_type: str
    total_document_attempts: int
    total_payment_attempts: int
    rejected_by: str
    rejected_at: datetime


class OrientationView(_ReadModel):
    application_id: str
    scheduled_date: date
    time_slot: str
    venue: str
    status: OrientationStatus
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    notes: Optional[str] = None


# --- operation outcomes ----------------------------------------------------------


class ReviewOutcome(BaseModel):
    artifact_id: str
    application_id: str
    review_status: ReviewStatus
    application_status: ApplicationStatus
    ledger_entry_id: Optional[str] = None
    attempt_number: Optional[int] = None
    remaining_attempts: Optional[int] = None
    warning: Optional[str] = None
    permanently_rejected: bool = False
    locked: bool = False
    message: str = ""


class SessionFinalization(BaseModel):
    completed: int = 0
    missed: int = 0
    excused: int = 0
    application_ids: List[str] = Field(default_factory=list)
