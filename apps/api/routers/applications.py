from typing import List, Optional

from fastapi import APIRouter, Depends, status

from apps.api.deps import get_current_active_user, get_engine, unwrap
from apps.api.schemas.applications import ApplicationCreate, FinalDecision, StatusRead
from domain.models import (
    ApplicationView,
    ArtifactKind,
    ArtifactView,
    LedgerEntryView,
    PermanentRejectionView,
)

router = APIRouter(prefix="/applications", tags=["applications"])


@router.post("/", response_model=ApplicationView, status_code=status.HTTP_201_CREATED)
def create_application(
    payload: ApplicationCreate, user=Depends(get_current_active_user), engine=Depends(get_engine)
):
    return unwrap(
        engine.applications.create(
            payload.job_category_id, user, payload.application_type, payload.applicant_id
        )
    )


@router.get("/{application_id}", response_model=ApplicationView)
def get_application(application_id: str, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    return unwrap(engine.applications.get(application_id, user))


@router.get("/{application_id}/artifacts", response_model=List[ArtifactView])
def list_artifacts(application_id: str, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    return unwrap(engine.applications.artifacts(application_id, user))


@router.get("/{application_id}/history", response_model=List[LedgerEntryView])
def rejection_history(
    application_id: str,
    kind: Optional[ArtifactKind] = None,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(engine.applications.history(application_id, user, kind))


@router.get("/{application_id}/permanent-rejection", response_model=Optional[PermanentRejectionView])
def permanent_rejection(
    application_id: str, user=Depends(get_current_active_user), engine=Depends(get_engine)
):
    return unwrap(engine.applications.permanent_rejection(application_id, user))


@router.post("/{application_id}/finalize", response_model=StatusRead)
def finalize_application(
    application_id: str,
    payload: FinalDecision,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    new_status = unwrap(
        engine.applications.finalize_application(
            application_id, payload.decision, payload.remarks, user, payload.rejection_category
        )
    )
    return StatusRead(application_id=application_id, status=new_status)
