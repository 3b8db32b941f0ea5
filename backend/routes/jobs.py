from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from backend.application import get_activity_feed, get_job_service
from backend.core.schema import (
    AcceptJobRequest,
    ActivityCreate,
    ActivityOut,
    CustomerRejectRequest,
    JobCreate,
    JobOut,
    ReassignRequest,
    TransferRequest,
)
from backend.domain.jobs import Department, Job, JobStatus
from backend.infrastructure.permissions import Caller
from backend.routes.identity import get_caller

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _job(job: Job) -> dict:
    return JobOut.from_domain(job).model_dump(mode="json")


@router.get("")
async def list_jobs(
    status: JobStatus | None = Query(default=None),
    department: Department | None = Query(default=None),
) -> dict:
    jobs = get_job_service().list_jobs(status=status, department=department)
    return {"items": [_job(job) for job in jobs]}


@router.post("")
async def create_job(payload: JobCreate, caller: Caller = Depends(get_caller)) -> dict:
    job = get_job_service().create_job(
        payload.department,
        caller,
        description=payload.description,
        customer_name=payload.customer_name,
        photos=payload.photos,
    )
    return _job(job)


@router.get("/{job_id}")
async def get_job(job_id: str) -> dict:
    location = get_job_service().get_job(job_id)
    return {"job": _job(location.job), "partition": location.partition}


@router.post("/{job_id}/accept")
async def accept_job(job_id: str, payload: AcceptJobRequest | None = None, caller: Caller = Depends(get_caller)) -> dict:
    worker_id = payload.worker_id if payload else None
    return _job(get_job_service().accept_job(job_id, caller, worker_id))


@router.post("/{job_id}/request-quotation")
async def request_quotation(job_id: str, caller: Caller = Depends(get_caller)) -> dict:
    return _job(get_job_service().request_quotation(job_id, caller))


@router.post("/{job_id}/mark-done")
async def mark_done(job_id: str, caller: Caller = Depends(get_caller)) -> dict:
    return _job(get_job_service().mark_done(job_id, caller))


@router.post("/{job_id}/customer-approve")
async def customer_approve(job_id: str, caller: Caller = Depends(get_caller)) -> dict:
    return _job(get_job_service().customer_approve(job_id, caller))


@router.post("/{job_id}/customer-reject")
async def customer_reject(job_id: str, payload: CustomerRejectRequest, caller: Caller = Depends(get_caller)) -> dict:
    return _job(get_job_service().customer_reject(job_id, caller, with_cost=payload.with_cost))


@router.post("/{job_id}/parts-ready")
async def parts_ready(job_id: str, caller: Caller = Depends(get_caller)) -> dict:
    return _job(get_job_service().parts_ready(job_id, caller))


@router.post("/{job_id}/transfer")
async def transfer_department(job_id: str, payload: TransferRequest, caller: Caller = Depends(get_caller)) -> dict:
    job = get_job_service().transfer_department(
        job_id, payload.department, caller, note=payload.note, override=payload.override
    )
    return _job(job)


@router.post("/{job_id}/reassign")
async def reassign_worker(job_id: str, payload: ReassignRequest, caller: Caller = Depends(get_caller)) -> dict:
    return _job(get_job_service().reassign_worker(job_id, payload.worker_id, caller))


@router.get("/{job_id}/activities")
async def list_activities(job_id: str, limit: int | None = Query(default=None, ge=1)) -> dict:
    activities = get_activity_feed().list(job_id, limit=limit)
    return {"items": [ActivityOut.from_domain(item).model_dump(mode="json") for item in activities]}


@router.post("/{job_id}/activities")
async def add_activity(job_id: str, payload: ActivityCreate, caller: Caller = Depends(get_caller)) -> dict:
    activity = get_job_service().add_activity(job_id, payload.text, caller, photos=payload.photos)
    return ActivityOut.from_domain(activity).model_dump(mode="json")


@router.post("/{job_id}/archive")
async def archive_job(job_id: str, caller: Caller = Depends(get_caller)) -> dict:
    result = get_job_service().archive_job(job_id, caller)
    return {
        "job_id": result.job_id,
        "partition": result.partition,
        "already_archived": result.already_archived,
        "moved_activities": result.moved_activities,
    }
