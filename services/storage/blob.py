from __future__ import annotations

import logging
import mimetypes
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Protocol

from core.errors import ErrorKind, ReviewError
from domain.value_objects import FileMetadata

logger = logging.getLogger(__name__)

_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="blob-meta")


class BlobStorage(Protocol):
    def stat(self, file_ref: str) -> FileMetadata:
        """Return metadata or raise FileNotFoundError. Never reads file bytes."""
        ...


class LocalBlobStorage:
    """Files under a root directory; ``file_ref`` is the path relative to it."""

    def __init__(self, root: str):
        self.root = Path(root)

    def stat(self, file_ref: str) -> FileMetadata:
        path = (self.root / file_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise FileNotFoundError(file_ref)
        st = path.stat()  # FileNotFoundError propagates
        ctype = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return FileMetadata(file_ref=file_ref, size=int(st.st_size), content_type=ctype)


def fetch_metadata(storage: BlobStorage, file_ref: str, timeout_s: float) -> FileMetadata:
    """Bounded metadata lookup: missing file is a precondition, anything slow or broken is a dependency failure."""
    if not file_ref:
        raise ReviewError(ErrorKind.INVALID_INPUT, "file reference is required")
    future = _pool.submit(storage.stat, file_ref)
    try:
        return future.result(timeout=timeout_s)
    except FileNotFoundError as e:
        raise ReviewError(ErrorKind.FILE_NOT_FOUND, f"File {file_ref} not found in storage") from e
    except FutureTimeout as e:
        future.cancel()
        logger.warning("storage metadata lookup for %s timed out after %.1fs", file_ref, timeout_s)
        raise ReviewError(ErrorKind.STORAGE_UNAVAILABLE, "Storage did not respond in time") from e
    except OSError as e:
        logger.warning("storage metadata lookup for %s failed: %s", file_ref, e)
        raise ReviewError(ErrorKind.STORAGE_UNAVAILABLE, "Storage is unavailable") from e
