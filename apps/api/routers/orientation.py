from fastapi import APIRouter, Depends

from apps.api.deps import get_current_active_user, get_engine, unwrap
from apps.api.schemas.orientation import AttendanceOverride, OrientationBook, SessionFinalize
from domain.models import OrientationView, SessionFinalization
from domain.value_objects import OrientationSlot

router = APIRouter(prefix="/orientation", tags=["orientation"])


@router.post("/schedule", response_model=OrientationView)
def book_orientation(payload: OrientationBook, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    slot = OrientationSlot(payload.scheduled_date, payload.time_slot, payload.venue or "")
    return unwrap(engine.orientation.schedule(payload.application_id, slot, user))


@router.post("/sessions/finalize", response_model=SessionFinalization)
def finalize_session(
    payload: SessionFinalize, user=Depends(get_current_active_user), engine=Depends(get_engine)
):
    return unwrap(
        engine.orientation.finalize_session(payload.scheduled_date, payload.time_slot, payload.venue, user)
    )


@router.post("/{application_id}/check-in", response_model=OrientationView)
def check_in(application_id: str, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    return unwrap(engine.orientation.check_in(application_id, user))


@router.post("/{application_id}/check-out", response_model=OrientationView)
def check_out(application_id: str, user=Depends(get_current_active_user), engine=Depends(get_engine)):
    return unwrap(engine.orientation.check_out(application_id, user))


@router.post("/{application_id}/attendance", response_model=OrientationView)
def set_attendance(
    application_id: str,
    payload: AttendanceOverride,
    user=Depends(get_current_active_user),
    engine=Depends(get_engine),
):
    return unwrap(engine.orientation.set_attendance_status(application_id, payload.status, payload.notes, user))
