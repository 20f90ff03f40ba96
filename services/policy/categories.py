"""
Job-category policy lookup.

``require_orientation`` has exactly one representation here: a boolean. Legacy
"Yes"/"No" strings are refused at this boundary instead of being normalized at
every call site.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, StrictBool, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.errors import ErrorKind, ReviewError
from core.security import Role
from domain.value_objects import CategoryPolicy
from services.persistence.models import JobCategory, Staff


class JobCategoryIn(BaseModel):
    id: Optional[str] = None
    name: str
    require_orientation: StrictBool


def validate_category(payload: dict[str, Any]) -> JobCategoryIn:
    try:
        return JobCategoryIn.model_validate(payload)
    except ValidationError as e:
        raise ReviewError(ErrorKind.INVALID_POLICY, f"invalid job category policy: {e.errors()[0]['msg']}") from e


def upsert_category(session: Session, payload: dict[str, Any]) -> JobCategory:
    data = validate_category(payload)
    row = session.get(JobCategory, data.id) if data.id else None
    if row is None:
        row = JobCategory(id=data.id, name=data.name, require_orientation=data.require_orientation)
        session.add(row)
    else:
        row.name = data.name
        row.require_orientation = data.require_orientation
    session.flush()
    return row


class CategoryPolicyLookup:
    def get(self, session: Session, job_category_id: str) -> CategoryPolicy:
        cat = session.get(JobCategory, job_category_id)
        if cat is None:
            raise ReviewError(ErrorKind.INVALID_POLICY, f"Unknown job category {job_category_id}")
        if not isinstance(cat.require_orientation, bool):
            raise ReviewError(
                ErrorKind.INVALID_POLICY,
                f"require_orientation for {job_category_id} is not a boolean",
            )
        return CategoryPolicy(
            job_category_id=cat.id,
            require_orientation=cat.require_orientation,
            admin_ids=tuple(self.admins_for(session, cat.id)),
        )

    def admins_for(self, session: Session, job_category_id: str) -> list[str]:
        """Admins managing the category; an empty managed list means every category."""
        admins = session.scalars(select(Staff).where(Staff.role == Role.ADMIN.value)).all()
        return [
            a.id
            for a in admins
            if not a.managed_categories or job_category_id in a.managed_categories
        ]
