from dataclasses import dataclass, field
from datetime import date


@dataclass(frozen=True)
class FileMetadata:
    file_ref: str
    size: int
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class OrientationSlot:
    scheduled_date: date
    time_slot: str  # e.g. "09:00-11:00"
    venue: str


@dataclass(frozen=True)
class CategoryPolicy:
    job_category_id: str
    require_orientation: bool
    admin_ids: tuple[str, ...] = field(default_factory=tuple)
