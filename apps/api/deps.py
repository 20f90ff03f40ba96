from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from core.errors import Err, ErrorFamily, ErrorKind, Result, ReviewError
from core.security import Actor, actor_from_token
from services.review.runtime import ReviewEngine

# tokens are issued by the identity service; we only decode them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

_STATUS_BY_KIND = {
    ErrorKind.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.APPLICATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ARTIFACT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.NO_ORIENTATION_SCHEDULED: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_POLICY: status.HTTP_400_BAD_REQUEST,
    ErrorKind.FILE_NOT_FOUND: status.HTTP_400_BAD_REQUEST,
}

_STATUS_BY_FAMILY = {
    ErrorFamily.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorFamily.PRECONDITION: status.HTTP_409_CONFLICT,
    ErrorFamily.POLICY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorFamily.DEPENDENCY: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_engine(request: Request) -> ReviewEngine:
    """The review engine built at startup."""
    return request.app.state.engine


def get_current_active_user(token: str = Depends(oauth2_scheme)) -> Actor:
    try:
        return actor_from_token(token)
    except ReviewError as e:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, e.message) from e


def http_status_for(err: Err) -> int:
    return _STATUS_BY_KIND.get(err.kind) or _STATUS_BY_FAMILY[err.family]


def unwrap(result: Result):
    """Return the value of an ``Ok`` or raise the matching HTTP error for an ``Err``."""
    if result.ok:
        return result.value
    raise HTTPException(status_code=http_status_for(result), detail=result.to_dict())
