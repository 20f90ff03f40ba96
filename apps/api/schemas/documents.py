from typing import List, Optional

from pydantic import BaseModel, Field

from domain.models import BatchDecision, IssueType


class DocumentSubmit(BaseModel):
    application_id: str
    artifact_type_id: str
    file_ref: str
    file_name: Optional[str] = None


class DocumentResubmit(DocumentSubmit):
    pass


class DocumentApprove(BaseModel):
    remarks: Optional[str] = None


class DocumentReject(BaseModel):
    category: str
    reason: str = Field(min_length=1)
    issues: List[str] = Field(default_factory=list)


class DocumentRefer(DocumentReject):
    issue_type: IssueType = IssueType.MEDICAL_REFERRAL
    doctor_name: Optional[str] = None
    clinic_address: Optional[str] = None


class OnsiteClearance(BaseModel):
    notes: Optional[str] = None


class BatchComplete(BaseModel):
    application_id: str
    decision: BatchDecision


class ResetVerification(BaseModel):
    application_id: str


class ResetResult(BaseModel):
    application_id: str
    ledger_rows_removed: int
