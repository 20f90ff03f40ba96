import logging
import time
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


@contextmanager
def timing_metric(name: str) -> Iterator[None]:
    """
    Simple timing context manager around one review operation.
    Durations are logged at DEBUG; anything slower than a second is a WARNING.
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start
        level = logging.WARNING if duration > 1.0 else logging.DEBUG
        logger.log(level, "[METRIC] %s took %.3fs", name, duration)
