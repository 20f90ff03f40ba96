from fastapi import APIRouter, Depends, status

from apps.api.deps import get_current_active_user, get_engine, unwrap
from apps.api.schemas.applications import StatusRead
from apps.api.schemas.documents import (
    BatchComplete,
    DocumentApprove,
    DocumentRefer,
    DocumentReject,
    DocumentResubmit,
    DocumentSubmit,
    OnsiteClearance,
    ResetResult,
    ResetVerification,
)
from domain.models import ArtifactView, ReviewOutcome

router = APIRouter(prefix="/documents", tags=["documents"])


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=ArtifactView)
def submit_document(payload: DocumentSubmit, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    return unwrap(
        engine.documents.submit(
            payload.application_id, payload.artifact_type_id, payload.file_ref, payload.file_name, user
        )
    )


@router.post("/resubmit", response_model=ReviewOutcome)
def resubmit_document(
    payload: DocumentResubmit, user=Depends(get_current_active_user), engine=Depends(get_engine)
):
    return unwrap(
        engine.documents.resubmit(
            payload.application_id, payload.artifact_type_id, payload.file_ref, payload.file_name, user
        )
    )


@router.post("/batch-complete", response_model=StatusRead)
def complete_review(payload: BatchComplete, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    new_status = unwrap(engine.documents.review_batch_complete(payload.application_id, payload.decision, user))
    return StatusRead(application_id=payload.application_id, status=new_status)


@router.post("/reset", response_model=ResetResult)
def reset_verification(
    payload: ResetVerification, user=Depends(get_current_active_user), engine=Depends(get_engine)
):
    removed = unwrap(engine.documents.reset_document_verification(payload.application_id, user))
    return ResetResult(application_id=payload.application_id, ledger_rows_removed=removed)


@router.post("/{artifact_id}/approve", response_model=ReviewOutcome)
def approve_document(
    artifact_id: str,
    payload: DocumentApprove,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(engine.documents.approve(artifact_id, user, payload.remarks))


@router.post("/{artifact_id}/reject", response_model=ReviewOutcome)
def reject_document(
    artifact_id: str,
    payload: DocumentReject,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(engine.documents.reject(artifact_id, payload.category, payload.reason, payload.issues, user))


@router.post("/{artifact_id}/refer", response_model=ReviewOutcome)
def refer_document(
    artifact_id: str,
    payload: DocumentRefer,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(
        engine.documents.refer(
            artifact_id,
            payload.issue_type,
            payload.category,
            payload.reason,
            payload.issues,
            payload.doctor_name,
            payload.clinic_address,
            user,
        )
    )


@router.post("/{artifact_id}/onsite-clearance", response_model=ReviewOutcome)
def clear_referral(
    artifact_id: str,
    payload: OnsiteClearance,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(engine.documents.approve_after_onsite_verification(artifact_id, payload.notes, user))
