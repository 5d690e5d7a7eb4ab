from datetime import date
from enum import Enum

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.errors import not_found, request_id_for, validation_error
from app.core.security import Actor, require_csrf, require_permission
from app.db import models
from app.db.session import get_db
from app.services.audit import log_audit
from app.services.formatting import (
    clean_optional,
    is_uuid,
    iso_date,
    iso_timestamp,
    parse_day,
    parse_uuid,
    short_place,
)

router = APIRouter(tags=["Jobs"])

JOB_STATUSES = ("booked", "scheduled", "completed", "cancelled")


class JobStatus(str, Enum):
    booked = "booked"
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"


class JobOut(BaseModel):
    id: str
    tenantId: str
    jobNumber: str
    customerId: str
    customerName: str
    primaryPhone: str | None = None
    email: str | None = None
    estimateId: str | None = None
    status: str
    scheduledDate: str | None = None
    pickupTime: str | None = None
    createdAt: str
    updatedAt: str


class JobEnvelope(BaseModel):
    job: JobOut
    requestId: str


class JobUpdate(BaseModel):
    scheduledDate: date | None = None
    pickupTime: str | None = None
    status: JobStatus | None = None


class CalendarCard(BaseModel):
    jobId: str
    jobNumber: str
    scheduledDate: str | None = None
    pickupTime: str | None = None
    customerName: str
    originShort: str | None = None
    destinationShort: str | None = None
    status: str
    hasStorage: bool
    balanceDueCents: int


class CalendarResponse(BaseModel):
    jobs: list[CalendarCard]
    requestId: str


def customer_display_name(customer: models.Customer | None) -> str:
    if customer is None:
        return "Customer"
    name = f"{customer.first_name} {customer.last_name}".strip()
    return name or "Customer"


def job_out(job: models.Job) -> JobOut:
    customer = job.customer
    return JobOut(
        id=job.id,
        tenantId=job.tenant_id,
        jobNumber=job.job_number,
        customerId=job.customer_id,
        customerName=customer_display_name(customer),
        primaryPhone=customer.phone if customer else None,
        email=customer.email if customer else None,
        estimateId=job.estimate_id,
        status=job.status,
        scheduledDate=iso_date(job.scheduled_date),
        pickupTime=job.pickup_time,
        createdAt=iso_timestamp(job.created_at),
        updatedAt=iso_timestamp(job.updated_at),
    )


def load_job(db: Session, tenant_id: str, job_id: str) -> models.Job:
    job = (
        db.query(models.Job)
        .filter(models.Job.id == job_id, models.Job.tenant_id == tenant_id)
        .first()
    )
    if not job:
        raise not_found("job_not_found", "Job was not found")
    return job


def _required_day(value: str | None, name: str) -> date:
    if value is None or not value.strip():
        raise validation_error(f"{name} query parameter is required")
    try:
        return parse_day(value.strip())
    except ValueError:
        raise validation_error(f"{name} must be in YYYY-MM-DD format")


def _compact_schedule(scheduled_date: date | None, pickup_time: str | None) -> dict:
    out = {}
    if scheduled_date is not None:
        out["scheduledDate"] = iso_date(scheduled_date)
    if pickup_time is not None:
        out["pickupTime"] = pickup_time
    return out


@router.get("/calendar", response_model=CalendarResponse)
def get_calendar(
    request: Request,
    from_: str | None = Query(None, alias="from"),
    to: str | None = Query(None),
    phase: str | None = Query(None),
    jobType: str | None = Query(None),
    userId: str | None = Query(None),
    departmentId: str | None = Query(None),
    actor: Actor = Depends(require_permission("calendar.read")),
    db: Session = Depends(get_db),
):
    start = _required_day(from_, "from")
    end = _required_day(to, "to")
    if end <= start:
        raise validation_error("`to` must be after `from`")
    if phase is not None and phase not in JOB_STATUSES:
        raise validation_error("phase must be one of booked, scheduled, completed, cancelled")
    for name, value in (("userId", userId), ("departmentId", departmentId)):
        if value is not None and not is_uuid(value):
            raise validation_error(f"{name} must be a valid UUID")

    query = (
        db.query(models.Job, models.Estimate, models.StorageRecord)
        .outerjoin(
            models.Estimate,
            (models.Estimate.id == models.Job.estimate_id)
            & (models.Estimate.tenant_id == models.Job.tenant_id),
        )
        .outerjoin(
            models.StorageRecord,
            (models.StorageRecord.job_id == models.Job.id)
            & (models.StorageRecord.tenant_id == models.Job.tenant_id),
        )
        .filter(
            models.Job.tenant_id == actor.tenant_id,
            models.Job.scheduled_date >= start,
            models.Job.scheduled_date < end,
        )
    )
    if phase:
        query = query.filter(models.Job.status == phase)
    job_type = clean_optional(jobType)
    if job_type:
        query = query.filter(models.Job.job_type == job_type)

    rows = query.order_by(models.Job.scheduled_date, models.Job.pickup_time, models.Job.job_number).all()

    cards = []
    for job, estimate, storage in rows:
        balance = 0
        if storage is not None:
            balance = (storage.storage_balance_cents or 0) + (storage.move_balance_cents or 0)
        cards.append(
            CalendarCard(
                jobId=job.id,
                jobNumber=job.job_number,
                scheduledDate=iso_date(job.scheduled_date),
                pickupTime=job.pickup_time,
                customerName=customer_display_name(job.customer),
                originShort=short_place(estimate.origin_city, estimate.origin_state) if estimate else None,
                destinationShort=(
                    short_place(estimate.destination_city, estimate.destination_state) if estimate else None
                ),
                status=job.status,
                hasStorage=storage is not None,
                balanceDueCents=balance,
            )
        )
    return CalendarResponse(jobs=cards, requestId=request_id_for(request))


@router.get("/jobs/{job_id}", response_model=JobEnvelope)
def get_job(
    job_id: str,
    request: Request,
    actor: Actor = Depends(require_permission("jobs.read")),
    db: Session = Depends(get_db),
):
    job_id = parse_uuid(job_id, "invalid_job_id", "Job")
    job = load_job(db, actor.tenant_id, job_id)
    return JobEnvelope(job=job_out(job), requestId=request_id_for(request))


@router.patch(
    "/jobs/{job_id}",
    response_model=JobEnvelope,
    dependencies=[Depends(require_csrf)],
)
def update_job(
    job_id: str,
    payload: JobUpdate,
    request: Request,
    actor: Actor = Depends(require_permission("calendar.write")),
    db: Session = Depends(get_db),
):
    job_id = parse_uuid(job_id, "invalid_job_id", "Job")
    if payload.scheduledDate is None and payload.pickupTime is None and payload.status is None:
        raise validation_error("At least one field must be provided")

    job = load_job(db, actor.tenant_id, job_id)
    before_schedule = _compact_schedule(job.scheduled_date, job.pickup_time)
    before_status = job.status

    if payload.scheduledDate is not None:
        job.scheduled_date = payload.scheduledDate
    pickup_time = clean_optional(payload.pickupTime)
    if pickup_time is not None:
        job.pickup_time = pickup_time
    if payload.status is not None:
        job.status = payload.status.value
    job.updated_by = actor.user_id
    db.commit()
    db.refresh(job)

    after_schedule = _compact_schedule(job.scheduled_date, job.pickup_time)
    request_id = request_id_for(request)
    if before_schedule != after_schedule:
        log_audit(
            db,
            tenant_id=actor.tenant_id,
            user_id=actor.user_id,
            action="job.schedule_update",
            entity_type="job",
            entity_id=job.id,
            request_id=request_id,
            metadata={"before": before_schedule, "after": after_schedule},
        )
    if before_status != job.status:
        log_audit(
            db,
            tenant_id=actor.tenant_id,
            user_id=actor.user_id,
            action="job.phase_update",
            entity_type="job",
            entity_id=job.id,
            request_id=request_id,
            metadata={"before": before_status, "after": job.status},
        )
    return JobEnvelope(job=job_out(job), requestId=request_id)
