from typing import Optional

from pydantic import BaseModel

from domain.models import ApplicationStatus, ApplicationType, FinalRejectionCategory


class ApplicationCreate(BaseModel):
    job_category_id: str
    application_type: ApplicationType = ApplicationType.NEW
    # admins may file on behalf of an applicant
    applicant_id: Optional[str] = None


class FinalDecision(BaseModel):
    decision: ApplicationStatus
    remarks: Optional[str] = None
    rejection_category: Optional[FinalRejectionCategory] = None


class StatusRead(BaseModel):
    application_id: str
    status: ApplicationStatus
