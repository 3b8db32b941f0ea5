from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class Activity:
    """Append-only audit entry in a job's activity sub-log."""

    activity_id: str
    job_id: str
    text: str
    author_id: str
    author_name: str
    created_at: datetime | None = None
    photos: list[str] = field(default_factory=list)
    event: str | None = None

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Activity":
        known = {name for name in cls.__dataclass_fields__}
        data = {key: value for key, value in record.items() if key in known}
        data["photos"] = list(data.get("photos") or [])
        return cls(**data)
