import logging
import sys

from core.config import settings


def configure_logging(level: str | None = None) -> None:
    """
    Configure structured logging for the whole app.
    Call this once in FastAPI startup (or from scripts before touching the runtime).
    """
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # SQL echo is controlled by the engine, keep the ORM quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


logger = logging.getLogger("healthcard_review")
