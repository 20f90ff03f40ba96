from typing import List, Optional

from pydantic import BaseModel, Field

from domain.models import AdministrativeReviewDecision, PaymentMethod, PaymentRejectionCategory


class PaymentSubmit(BaseModel):
    application_id: str
    amount: float = Field(gt=0)
    payment_method: PaymentMethod
    reference_number: str
    receipt_ref: str


class PaymentResubmit(BaseModel):
    application_id: str
    receipt_ref: str
    reference_number: Optional[str] = None


class PaymentApprove(BaseModel):
    remarks: Optional[str] = None


class PaymentReject(BaseModel):
    category: PaymentRejectionCategory
    reason: str = Field(min_length=1)
    issues: List[str] = Field(default_factory=list)


class AdministrativeReview(BaseModel):
    application_id: str
    decision: AdministrativeReviewDecision
    remarks: Optional[str] = None
