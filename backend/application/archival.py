"""Year-partitioned archival of closed jobs and archive-aware lookup."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from backend.core.config import EngineSettings
from backend.core.partitions import DOCUMENTS, JOBS, activities_collection, archive_collection, archive_years, year_from_date
from backend.core.validation import InvalidTransition, RecordNotFound, StateConflict, StorageUnavailable
from backend.domain.documents import DocStatus
from backend.domain.jobs import Job, JobStatus
from backend.infrastructure.clock import Clock
from backend.infrastructure.store import SERVER_TIMESTAMP, BatchRejected, Precondition, RecordStore, StoreUnavailable, Write

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobLocation:
    job: Job
    partition: str

    @property
    def is_archived(self) -> bool:
        return self.partition != JOBS

    @property
    def activities(self) -> str:
        return activities_collection(self.partition, self.job.job_id)


@dataclass(frozen=True)
class ArchiveResult:
    job_id: str
    partition: str
    already_archived: bool
    moved_activities: int = 0


class ArchivalMover:
    def __init__(self, store: RecordStore, settings: EngineSettings, clock: Clock) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    def partition_for(self, job: Job) -> str:
        year = year_from_date(job.closed_date, fallback=self._clock.today().year)
        return archive_collection(year, self._settings.archive_collection_prefix)

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------
    def candidate_partitions(self) -> list[str]:
        years = archive_years(self._clock.today().year, self._settings.archive_horizon_years)
        return [archive_collection(year, self._settings.archive_collection_prefix) for year in years]

    def locate(self, job_id: str) -> JobLocation | None:
        """Live partition first, then archives newest year first within the horizon."""

        record = self._store.get(JOBS, job_id)
        if record is not None:
            return JobLocation(Job.from_record(record), JOBS)
        for partition in self.candidate_partitions():
            record = self._store.get(partition, job_id)
            if record is not None:
                return JobLocation(Job.from_record(record), partition)
        return None

    def job_in(self, partition: str, job_id: str) -> Job | None:
        record = self._store.get(partition, job_id)
        return Job.from_record(record) if record is not None else None

    def find_job(self, job_id: str) -> JobLocation:
        location = self.locate(job_id)
        if location is None:
            raise RecordNotFound(f"job {job_id} not found", job_id=job_id)
        return location

    # ------------------------------------------------------------------
    # archive
    # ------------------------------------------------------------------
    def _commit(self, writes: list[Write]) -> None:
        try:
            self._store.commit_batch(writes)
        except BatchRejected as exc:
            raise StateConflict("job changed while it was being archived", record_id=exc.record_id) from exc
        except (StoreUnavailable, TimeoutError, ConnectionError) as exc:
            raise StorageUnavailable("archive batch was not applied") from exc

    def commit_chunked(self, writes: Iterable[Write]) -> int:
        pending = list(writes)
        size = self._store.max_batch_writes
        for start in range(0, len(pending), size):
            self._commit(pending[start : start + size])
        return len(pending)

    def _payment_status(self, job: Job) -> str:
        if job.sales_doc_id is None:
            return "NO_CHARGE"
        document = self._store.get(DOCUMENTS, job.sales_doc_id)
        if document is not None and document.get("status") == DocStatus.PAID.value:
            return "PAID"
        return "UNPAID"

    def _copy_activities(self, source: str, target: str) -> list[dict[str, Any]]:
        rows = self._store.query(source)
        self.commit_chunked(Write.set(target, row["activity_id"], row) for row in rows)
        return rows

    def archive(self, job_id: str) -> ArchiveResult:
        """Move a CLOSED job and its activity sub-log into its year partition.

        Re-running on an archived job is a no-op.  A crash between steps
        leaves either the live job intact (retry archives it) or stray live
        activities next to an archived job (retry removes them).
        """

        record = self._store.get(JOBS, job_id)
        if record is None:
            location = self.locate(job_id)
            if location is None or not location.is_archived:
                raise RecordNotFound(f"job {job_id} not found", job_id=job_id)
            leftovers = self._store.query(activities_collection(JOBS, job_id))
            if leftovers:
                self.commit_chunked(
                    Write.delete(activities_collection(JOBS, job_id), row["activity_id"]) for row in leftovers
                )
                logger.info("removed %d leftover live activities of archived job %s", len(leftovers), job_id)
            return ArchiveResult(job_id, location.partition, already_archived=True)

        job = Job.from_record(record)
        if job.status is not JobStatus.CLOSED or job.closed_date is None:
            raise InvalidTransition(
                f"job {job_id} is {job.status.value}; only closed jobs can be archived",
                job_id=job_id,
                status=job.status.value,
            )

        partition = self.partition_for(job)
        if partition not in self.candidate_partitions():
            logger.warning(
                "job %s closed on %s goes to %s, outside the %d-year lookup horizon",
                job_id,
                job.closed_date,
                partition,
                self._settings.archive_horizon_years,
            )
        live_activities = activities_collection(JOBS, job_id)
        rows = self._copy_activities(live_activities, activities_collection(partition, job_id))

        archived = dict(record)
        archived.update(
            is_archived=True,
            archived_at=SERVER_TIMESTAMP,
            status=JobStatus.CLOSED.value,
            payment_status_at_close=self._payment_status(job),
        )
        self._commit(
            [
                Write.set(partition, job_id, archived),
                Write.delete(
                    JOBS,
                    job_id,
                    Precondition(exists=True, fields={"status": JobStatus.CLOSED.value, "sales_doc_id": job.sales_doc_id}),
                ),
            ]
        )
        self.commit_chunked(Write.delete(live_activities, row["activity_id"]) for row in rows)
        logger.info("archived job %s into %s with %d activities", job_id, partition, len(rows))
        return ArchiveResult(job_id, partition, already_archived=False, moved_activities=len(rows))

    def restore_writes(self, location: JobLocation, restored: dict[str, Any]) -> tuple[list[Write], list[Write], list[Write]]:
        """Writes that bring an archived job back into the live partition.

        Returns ``(before, main, after)``: activity copies that must land
        before the main batch, the job move that belongs in the caller's
        atomic batch, and the archive clean-up to run afterwards.
        """

        job_id = location.job.job_id
        rows = self._store.query(location.activities)
        copies = [Write.set(activities_collection(JOBS, job_id), row["activity_id"], row) for row in rows]
        main = [
            Write.set(JOBS, job_id, restored, Precondition(exists=False)),
            Write.delete(location.partition, job_id, Precondition(exists=True, fields={"sales_doc_id": location.job.sales_doc_id})),
        ]
        cleanup = [Write.delete(location.activities, row["activity_id"]) for row in rows]
        return copies, main, cleanup
