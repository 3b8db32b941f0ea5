"""Read-only activity timelines for UI consumers."""
from __future__ import annotations

from typing import Any, Callable

from backend.application.archival import ArchivalMover
from backend.domain.activity import Activity
from backend.infrastructure.store import RecordStore, Subscription

ActivityCallback = Callable[[list[Activity]], None]


def _newest_first(rows: list[dict[str, Any]]) -> list[Activity]:
    activities = [Activity.from_record(row) for row in rows]
    activities.sort(key=lambda item: (item.created_at is not None, item.created_at), reverse=True)
    return activities


class ActivityFeed:
    """Activity sub-log of a job, newest first, wherever the job currently lives."""

    def __init__(self, store: RecordStore, archival: ArchivalMover) -> None:
        self._store = store
        self._archival = archival

    def list(self, job_id: str, limit: int | None = None) -> list[Activity]:
        location = self._archival.find_job(job_id)
        activities = _newest_first(self._store.query(location.activities))
        return activities[:limit] if limit else activities

    def subscribe(self, job_id: str, callback: ActivityCallback) -> Subscription:
        location = self._archival.find_job(job_id)
        return self._store.subscribe(location.activities, lambda rows: callback(_newest_first(rows)))
