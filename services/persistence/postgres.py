from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from core.config import settings
from core.errors import ErrorKind, ReviewError
from services.persistence.models import Application, Artifact, Base

logger = logging.getLogger(__name__)

AFTER_COMMIT = "after_commit"


def make_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    """Postgres (psycopg2) in deployments; an in-memory SQLite URL is accepted for tests."""
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            # one shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_size=10, max_overflow=20, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    logger.info("schema ensured on %s", engine.url.render_as_string(hide_password=True))


def after_commit(session: Session, callback: Callable[[], None]) -> None:
    """Run ``callback`` once the surrounding transaction has committed."""
    session.info.setdefault(AFTER_COMMIT, []).append(callback)


@contextmanager
def transaction(
    factory: sessionmaker, conflict: ErrorKind = ErrorKind.ALREADY_REVIEWED
) -> Iterator[Session]:
    """One atomic unit of work: commit on success, roll back on any failure.

    Lost update races (stale version, duplicate attempt number) surface as
    ``conflict`` instead of a silent overwrite.
    """
    session: Session = factory()
    try:
        yield session
        session.commit()
    except (StaleDataError, IntegrityError) as e:
        session.rollback()
        logger.warning("concurrent update rejected: %s", e.__class__.__name__)
        raise ReviewError(conflict, "The record was changed by another reviewer; reload and retry") from e
    except Exception:
        session.rollback()
        raise
    else:
        for callback in session.info.pop(AFTER_COMMIT, []):
            try:
                callback()
            except Exception:
                logger.exception("after-commit callback failed")
    finally:
        session.close()


def lock_application(session: Session, application_id: str) -> Application:
    app = session.execute(
        select(Application).where(Application.id == application_id).with_for_update()
    ).scalar_one_or_none()
    if app is None:
        raise ReviewError(ErrorKind.APPLICATION_NOT_FOUND, f"Application {application_id} not found")
    return app


def lock_artifact(session: Session, artifact_id: str) -> Artifact:
    art = session.execute(
        select(Artifact).where(Artifact.id == artifact_id).with_for_update()
    ).scalar_one_or_none()
    if art is None:
        raise ReviewError(ErrorKind.ARTIFACT_NOT_FOUND, f"Artifact {artifact_id} not found")
    return art


def lock_artifact_by_type(session: Session, application_id: str, artifact_type_id: str) -> Artifact:
    art = session.execute(
        select(Artifact)
        .where(Artifact.application_id == application_id)
        .where(Artifact.artifact_type_id == artifact_type_id)
        .with_for_update()
    ).scalar_one_or_none()
    if art is None:
        raise ReviewError(
            ErrorKind.ARTIFACT_NOT_FOUND,
            f"No {artifact_type_id} artifact for application {application_id}",
        )
    return art
