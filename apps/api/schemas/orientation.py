from datetime import date
from typing import Optional

from pydantic import BaseModel

from domain.models import OrientationStatus


class OrientationBook(BaseModel):
    application_id: str
    scheduled_date: date
    time_slot: str
    venue: Optional[str] = None


class SessionFinalize(BaseModel):
    scheduled_date: date
    time_slot: str
    venue: str


class AttendanceOverride(BaseModel):
    status: OrientationStatus
    notes: Optional[str] = None
