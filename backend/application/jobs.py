"""User-driven job workflow operations (intake, floor transitions, notes)."""
from __future__ import annotations

import logging
from typing import Callable, Iterable

from backend.application.archival import ArchivalMover, ArchiveResult, JobLocation
from backend.application.batch import TransitionBatch, ensure_allowed
from backend.core.config import EngineSettings
from backend.core.partitions import JOBS
from backend.core.validation import InvalidTransition, InvariantViolation, RecordNotFound
from backend.domain import job_machine
from backend.domain.activity import Activity
from backend.domain.job_machine import JobTransition, Worker
from backend.domain.jobs import Department, Job, JobStatus
from backend.infrastructure.clock import Clock
from backend.infrastructure.permissions import Action, Caller, PermissionProvider
from backend.infrastructure.store import RecordStore
from backend.infrastructure.workers import WorkerDirectory

logger = logging.getLogger(__name__)


class JobService:
    """Coordinates job use cases that touch only the job and its activity log."""

    def __init__(
        self,
        store: RecordStore,
        settings: EngineSettings,
        clock: Clock,
        permissions: PermissionProvider,
        workers: WorkerDirectory,
        archival: ArchivalMover,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._permissions = permissions
        self._workers = workers
        self._archival = archival

    def _batch(self, caller: Caller) -> TransitionBatch:
        return TransitionBatch(self._store, caller, self._settings.vat_rate)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> JobLocation:
        return self._archival.find_job(job_id)

    def load_live_job(self, job_id: str) -> Job:
        record = self._store.get(JOBS, job_id)
        if record is not None:
            return Job.from_record(record)
        if self._archival.locate(job_id) is not None:
            raise InvalidTransition(f"job {job_id} is archived and read-only", job_id=job_id)
        raise RecordNotFound(f"job {job_id} not found", job_id=job_id)

    def list_jobs(self, *, status: JobStatus | None = None, department: Department | None = None) -> list[Job]:
        where: dict[str, object] = {}
        if status is not None:
            where["status"] = status.value
        if department is not None:
            where["department"] = department.value
        rows = self._store.query(JOBS, where=where or None, order_by="last_activity_at", descending=True)
        return [Job.from_record(row) for row in rows]

    # ------------------------------------------------------------------
    # intake
    # ------------------------------------------------------------------
    def create_job(
        self,
        department: Department,
        caller: Caller,
        *,
        description: str = "",
        customer_name: str | None = None,
        photos: Iterable[str] = (),
    ) -> Job:
        ensure_allowed(self._permissions, caller, Action.JOB_INTAKE)
        job = Job(
            job_id=self._store.new_id(),
            department=department,
            description=description,
            customer_name=customer_name,
            photos=list(photos),
        )
        batch = self._batch(caller)
        batch.create_job(job, f"Job received into {department.value}")
        timestamp = batch.commit()
        job.created_at = timestamp
        job.last_activity_at = timestamp
        logger.info("job %s received into %s", job.job_id, department.value)
        return job

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def _apply(self, job_id: str, caller: Caller, action: Action, step: Callable[[Job], JobTransition]) -> Job:
        ensure_allowed(self._permissions, caller, action)
        transition = step(self.load_live_job(job_id))
        batch = self._batch(caller)
        batch.apply_job(transition)
        timestamp = batch.commit()
        transition.after.last_activity_at = timestamp
        logger.info(
            "job %s %s: %s -> %s",
            job_id,
            transition.event.value,
            transition.before.status.value,
            transition.after.status.value,
        )
        return transition.after

    def _worker(self, worker_id: str) -> Worker:
        worker = self._workers.get_worker(worker_id)
        if worker is None:
            raise InvariantViolation(f"worker {worker_id} does not exist", worker_id=worker_id)
        return worker

    def accept_job(self, job_id: str, caller: Caller, worker_id: str | None = None) -> Job:
        def step(job: Job) -> JobTransition:
            if worker_id is None:
                worker = Worker(caller.user_id, caller.name, job.department)
            else:
                worker = self._worker(worker_id)
                if not worker.active or worker.department != job.department:
                    raise InvariantViolation(
                        f"worker {worker.name} cannot take {job.department.value} jobs",
                        worker_id=worker_id,
                    )
            return job_machine.accept_job(job, worker)

        return self._apply(job_id, caller, Action.JOB_WORKFLOW, step)

    def request_quotation(self, job_id: str, caller: Caller) -> Job:
        return self._apply(job_id, caller, Action.JOB_WORKFLOW, job_machine.request_quotation)

    def mark_done(self, job_id: str, caller: Caller) -> Job:
        return self._apply(job_id, caller, Action.JOB_WORKFLOW, job_machine.mark_done)

    def customer_approve(self, job_id: str, caller: Caller) -> Job:
        return self._apply(job_id, caller, Action.JOB_CUSTOMER_DECISION, job_machine.customer_approve)

    def customer_reject(self, job_id: str, caller: Caller, *, with_cost: bool) -> Job:
        today = self._clock.today()
        return self._apply(
            job_id,
            caller,
            Action.JOB_CUSTOMER_DECISION,
            lambda job: job_machine.customer_reject(job, with_cost, today),
        )

    def parts_ready(self, job_id: str, caller: Caller) -> Job:
        return self._apply(job_id, caller, Action.JOB_WORKFLOW, job_machine.parts_ready)

    def transfer_department(
        self,
        job_id: str,
        department: Department,
        caller: Caller,
        *,
        note: str = "",
        override: bool = False,
    ) -> Job:
        if override:
            ensure_allowed(self._permissions, caller, Action.JOB_TRANSFER_OVERRIDE)
        return self._apply(
            job_id,
            caller,
            Action.JOB_TRANSFER,
            lambda job: job_machine.transfer_department(job, department, note, override=override),
        )

    def reassign_worker(self, job_id: str, worker_id: str, caller: Caller) -> Job:
        return self._apply(
            job_id,
            caller,
            Action.JOB_REASSIGN,
            lambda job: job_machine.reassign_worker(job, self._worker(worker_id)),
        )

    # ------------------------------------------------------------------
    # activity log
    # ------------------------------------------------------------------
    def add_activity(self, job_id: str, text: str, caller: Caller, *, photos: Iterable[str] = ()) -> Activity:
        """Append a note; archived jobs accept notes from elevated callers only."""

        if not text.strip() and not list(photos):
            raise InvariantViolation("an activity needs text or photos")
        location = self._archival.find_job(job_id)
        action = Action.ARCHIVED_JOB_ADD_ACTIVITY if location.is_archived else Action.JOB_ADD_ACTIVITY
        ensure_allowed(self._permissions, caller, action)

        batch = self._batch(caller)
        activity = batch.add_activity(job_id, text.strip(), partition=location.partition, photos=photos)
        batch.commit()
        return activity

    # ------------------------------------------------------------------
    # archival
    # ------------------------------------------------------------------
    def archive_job(self, job_id: str, caller: Caller) -> ArchiveResult:
        """Archive a closed job on demand; safe to repeat."""

        ensure_allowed(self._permissions, caller, Action.JOB_ARCHIVE)
        return self._archival.archive(job_id)
