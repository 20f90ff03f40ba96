"""
Actor identity and the single capability check used by every mutation.

Identity itself is resolved upstream; we only decode the already-issued bearer
token into an ``Actor`` and decide what that actor may do.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, cast

from jose import JWTError, jwt

from core.config import settings
from core.errors import ErrorKind, ReviewError


class Role(str, Enum):
    APPLICANT = "applicant"
    ADMIN = "admin"
    INSPECTOR = "inspector"
    SYSTEM_ADMIN = "system_admin"


class Action(str, Enum):
    SUBMIT = "submit"  # applicant uploads / pays / books
    RESUBMIT = "resubmit"
    REVIEW = "review"  # approve / reject / refer
    ONSITE_CLEARANCE = "onsite_clearance"
    ATTENDANCE = "attendance"  # check-in / check-out
    ADMINISTER = "administer"  # batch decisions, session finalization, resets, final decisions
    READ = "read"


REVIEWER_ROLES = {Role.ADMIN, Role.INSPECTOR}

_ALLOWED_ROLES: dict[Action, set[Role]] = {
    Action.SUBMIT: {Role.APPLICANT, Role.ADMIN},
    Action.RESUBMIT: {Role.APPLICANT},
    Action.REVIEW: REVIEWER_ROLES,
    Action.ONSITE_CLEARANCE: {Role.ADMIN},
    Action.ATTENDANCE: REVIEWER_ROLES,
    Action.ADMINISTER: {Role.ADMIN},
    Action.READ: {Role.APPLICANT, Role.ADMIN, Role.INSPECTOR, Role.SYSTEM_ADMIN},
}


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    # empty means "all categories" for admins
    managed_categories: tuple[str, ...] = field(default_factory=tuple)

    def manages(self, job_category_id: Optional[str]) -> bool:
        if not self.managed_categories or job_category_id is None:
            return True
        return job_category_id in self.managed_categories


SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    kind: Optional[ErrorKind] = None
    reason: str = ""

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise ReviewError(self.kind or ErrorKind.INSUFFICIENT_ROLE, self.reason)


ALLOW = Decision(True)


def authorize(
    actor: Optional[Actor],
    action: Action,
    job_category_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Decision:
    """Decide whether ``actor`` may perform ``action`` on a resource.

    ``job_category_id`` scopes admins to the categories they manage and
    ``owner_id`` restricts applicants to their own applications.
    """
    if actor is None:
        return Decision(False, ErrorKind.NOT_AUTHENTICATED, "Not authenticated")

    if actor.role is Role.SYSTEM_ADMIN and action is not Action.READ:
        return Decision(
            False,
            ErrorKind.READ_ONLY_OVERSIGHT,
            "System administrators have read-only oversight and cannot modify applications",
        )

    if actor.role not in _ALLOWED_ROLES[action]:
        return Decision(
            False,
            ErrorKind.INSUFFICIENT_ROLE,
            f"Role '{actor.role.value}' may not perform '{action.value}'",
        )

    if actor.role is Role.APPLICANT and owner_id is not None and actor.id != owner_id:
        return Decision(
            False, ErrorKind.INSUFFICIENT_ROLE, "You can only act on your own applications"
        )

    if actor.role is Role.ADMIN and not actor.manages(job_category_id):
        return Decision(
            False,
            ErrorKind.INSUFFICIENT_ROLE,
            f"Admin does not manage job category {job_category_id}",
        )

    return ALLOW


def require(
    actor: Optional[Actor],
    action: Action,
    job_category_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Actor:
    authorize(actor, action, job_category_id, owner_id).raise_if_denied()
    # an anonymous actor is always denied above
    return cast(Actor, actor)


# --- bearer tokens -------------------------------------------------------------


def create_access_token(
    sub: str, role: Role, minutes: int, categories: tuple[str, ...] = ()
) -> str:
    now = int(time.time())
    payload = {
        "sub": sub,
        "role": role.value,
        "categories": list(categories),
        "iat": now,
        "exp": now + minutes * 60,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.TOKEN_ALGORITHM)


def decode_token(tok: str) -> dict[str, Any]:
    return jwt.decode(tok, settings.SECRET_KEY, algorithms=[settings.TOKEN_ALGORITHM])


def actor_from_token(tok: str) -> Actor:
    try:
        payload = decode_token(tok)
        return Actor(
            id=str(payload["sub"]),
            role=Role(payload.get("role", Role.APPLICANT.value)),
            managed_categories=tuple(payload.get("categories") or ()),
        )
    except (JWTError, KeyError, ValueError) as e:
        raise ReviewError(ErrorKind.NOT_AUTHENTICATED, "invalid or expired token") from e
