from fastapi import APIRouter, Depends, status

from apps.api.deps import get_current_active_user, get_engine, unwrap
from apps.api.schemas.applications import StatusRead
from apps.api.schemas.payments import (
    AdministrativeReview,
    PaymentApprove,
    PaymentReject,
    PaymentResubmit,
    PaymentSubmit,
)
from domain.models import ArtifactView, ReviewOutcome

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=ArtifactView)
def submit_payment(payload: PaymentSubmit, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    return unwrap(
        engine.payments.submit(
            payload.application_id,
            payload.amount,
            payload.payment_method,
            payload.reference_number,
            payload.receipt_ref,
            user,
        )
    )


@router.post("/resubmit", response_model=ReviewOutcome)
def resubmit_payment(
    payload: PaymentResubmit, user=Depends(get_current_active_user), engine=Depends(get_engine)
):
    return unwrap(
        engine.payments.resubmit(payload.application_id, payload.receipt_ref, payload.reference_number, user)
    )


@router.post("/administrative-review", response_model=StatusRead)
def resolve_review(
    payload: AdministrativeReview, user=Depends(get_current_active_user), engine=Depends(get_engine)
):
    new_status = unwrap(
        engine.payments.resolve_administrative_review(
            payload.application_id, payload.decision, payload.remarks, user
        )
    )
    return StatusRead(application_id=payload.application_id, status=new_status)


@router.post("/{artifact_id}/approve", response_model=ReviewOutcome)
def approve_payment(
    artifact_id: str,
    payload: PaymentApprove,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(engine.payments.approve(artifact_id, user, payload.remarks))


@router.post("/{artifact_id}/reject", response_model=ReviewOutcome)
def reject_payment(
    artifact_id: str,
    payload: PaymentReject,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(engine.payments.reject(artifact_id, payload.category, payload.reason, payload.issues, user))
