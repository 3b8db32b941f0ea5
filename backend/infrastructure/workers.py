from __future__ import annotations

from typing import Protocol

from backend.core.partitions import USERS
from backend.domain.job_machine import Worker
from backend.domain.jobs import Department
from backend.infrastructure.store import RecordStore


class WorkerDirectory(Protocol):
    """Lookup of repair staff, owned by the HR features."""

    def get_worker(self, worker_id: str) -> Worker | None: ...


class StoreWorkerDirectory:
    """Reads worker profiles from the ``users`` collection."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def get_worker(self, worker_id: str) -> Worker | None:
        record = self._store.get(USERS, worker_id)
        if record is None:
            return None
        department = record.get("department")
        try:
            dept = Department(department) if department else None
        except ValueError:
            dept = None
        return Worker(
            worker_id=worker_id,
            name=str(record.get("display_name") or record.get("name") or worker_id),
            department=dept,
            active=str(record.get("status") or "ACTIVE").upper() == "ACTIVE",
        )
