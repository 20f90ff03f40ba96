# apps/api/main.py

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apps.api.routers import applications, documents, orientation, payments
from core.config import settings
from core.logging import configure_logging
from services.persistence.postgres import init_db
from services.review.runtime import ReviewEngine, build_runtime

logger = logging.getLogger(__name__)


def create_app(engine: Optional[ReviewEngine] = None) -> FastAPI:
    """Build the API around a review engine; tests pass one bound to SQLite."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        if engine is None:
            init_db(app.state.engine.runtime.session_factory.kw["bind"])
        logger.info("review API started")
        yield
        app.state.engine.shutdown()

    app = FastAPI(title="Health Card Review API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine or ReviewEngine(build_runtime())

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(applications.router)
    app.include_router(documents.router)
    app.include_router(payments.router)
    app.include_router(orientation.router)
    return app


app = create_app()
