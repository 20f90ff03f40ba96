"""
Error taxonomy and the tagged result convention used by every review operation.

Business-rule failures are raised internally as ``ReviewError`` so the open
transaction rolls back, and are handed to callers as ``Err``. Anything else is a
genuine bug and propagates as a normal exception.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorFamily(str, Enum):
    AUTHORIZATION = "authorization"
    PRECONDITION = "precondition"
    POLICY = "policy"
    DEPENDENCY = "dependency"


class ErrorKind(str, Enum):
    # authorization
    NOT_AUTHENTICATED = "NotAuthenticated"
    INSUFFICIENT_ROLE = "InsufficientRole"
    READ_ONLY_OVERSIGHT = "ReadOnlyOversight"
    # precondition
    APPLICATION_NOT_FOUND = "ApplicationNotFound"
    ARTIFACT_NOT_FOUND = "ArtifactNotFound"
    ALREADY_REVIEWED = "AlreadyReviewed"
    ALREADY_REPLACED = "AlreadyReplaced"
    NO_OUTSTANDING_REFERRAL = "NoOutstandingReferral"
    NO_OUTSTANDING_REJECTION = "NoOutstandingRejection"
    INVALID_TRANSITION = "InvalidTransition"
    APPLICATION_CLOSED = "ApplicationClosed"
    ALREADY_CHECKED_IN = "AlreadyCheckedIn"
    ALREADY_CHECKED_OUT = "AlreadyCheckedOut"
    NOT_CHECKED_IN = "NotCheckedIn"
    NO_ORIENTATION_SCHEDULED = "NoOrientationScheduled"
    FILE_NOT_FOUND = "FileNotFound"
    INVALID_INPUT = "InvalidInput"
    INVALID_POLICY = "InvalidPolicy"
    # policy
    MAX_ATTEMPTS_EXCEEDED = "MaxAttemptsExceeded"
    NOT_RESUBMITTABLE = "NotResubmittable"
    APPLICATION_LOCKED = "ApplicationLocked"
    GRACE_PERIOD_EXPIRED = "GracePeriodExpired"
    # dependency
    STORAGE_UNAVAILABLE = "StorageUnavailable"

    @property
    def family(self) -> ErrorFamily:
        return _FAMILIES[self]

    @property
    def retryable(self) -> bool:
        """Only dependency failures may be retried as-is (with backoff)."""
        return self.family is ErrorFamily.DEPENDENCY


_FAMILIES: dict[ErrorKind, ErrorFamily] = {
    ErrorKind.NOT_AUTHENTICATED: ErrorFamily.AUTHORIZATION,
    ErrorKind.INSUFFICIENT_ROLE: ErrorFamily.AUTHORIZATION,
    ErrorKind.READ_ONLY_OVERSIGHT: ErrorFamily.AUTHORIZATION,
    ErrorKind.MAX_ATTEMPTS_EXCEEDED: ErrorFamily.POLICY,
    ErrorKind.NOT_RESUBMITTABLE: ErrorFamily.POLICY,
    ErrorKind.APPLICATION_LOCKED: ErrorFamily.POLICY,
    ErrorKind.GRACE_PERIOD_EXPIRED: ErrorFamily.POLICY,
    ErrorKind.STORAGE_UNAVAILABLE: ErrorFamily.DEPENDENCY,
}
for _kind in ErrorKind:
    _FAMILIES.setdefault(_kind, ErrorFamily.PRECONDITION)


class ReviewError(Exception):
    """A business-rule failure. Raising it inside a transaction rolls it back."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"ReviewError({self.kind.value}, {self.message!r})"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    ok: bool = False

    @property
    def family(self) -> ErrorFamily:
        return self.kind.family

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind.value,
            "family": self.family.value,
            "message": self.message,
            "retryable": self.retryable,
        }


Result = Union[Ok[T], Err]


def as_result(fn: Callable[..., T]) -> Callable[..., Result[T]]:
    """Wrap an operation so it returns ``Ok(value)`` or ``Err(kind, message)``."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
        try:
            return Ok(fn(*args, **kwargs))
        except ReviewError as e:
            logger.info("%s refused: %s (%s)", fn.__qualname__, e.kind.value, e.message)
            return Err(e.kind, e.message)

    return wrapper
