import base64
import binascii
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.v1.jobs import customer_display_name, load_job
from app.core.errors import ApiError, conflict, not_found, request_id_for, validation_error
from app.core.security import Actor, require_csrf, require_permission
from app.db import models
from app.db.session import get_db
from app.services.audit import log_audit
from app.services.formatting import (
    clean_optional,
    iso_date,
    iso_timestamp,
    parse_iso_timestamp,
    parse_uuid,
    rfc3339_seconds,
    short_place,
)

router = APIRouter(tags=["Storage"])

DEFAULT_LIST_LIMIT = 25
MAX_LIST_LIMIT = 100


class StorageStatus(str, Enum):
    in_storage = "in_storage"
    sit = "sit"
    out = "out"


class StorageCreate(BaseModel):
    facility: str = ""
    status: StorageStatus | None = None
    dateIn: date | None = None
    dateOut: date | None = None
    nextBillDate: date | None = None
    lotNumber: str | None = None
    locationLabel: str | None = None
    vaults: int | None = Field(None, ge=0)
    pads: int | None = Field(None, ge=0)
    items: int | None = Field(None, ge=0)
    oversizeItems: int | None = Field(None, ge=0)
    volume: int | None = Field(None, ge=0)
    monthlyRateCents: int | None = Field(None, ge=0)
    storageBalanceCents: int | None = Field(None, ge=0)
    moveBalanceCents: int | None = Field(None, ge=0)
    lastPaymentAt: datetime | None = None
    notes: str | None = None


class StorageUpdate(BaseModel):
    facility: str = ""
    status: StorageStatus
    dateIn: date | None = None
    dateOut: date | None = None
    nextBillDate: date | None = None
    lotNumber: str | None = None
    locationLabel: str | None = None
    vaults: int = Field(..., ge=0)
    pads: int = Field(..., ge=0)
    items: int = Field(..., ge=0)
    oversizeItems: int = Field(..., ge=0)
    volume: int = Field(..., ge=0)
    monthlyRateCents: int | None = Field(None, ge=0)
    storageBalanceCents: int = Field(..., ge=0)
    moveBalanceCents: int = Field(..., ge=0)
    lastPaymentAt: datetime | None = None
    notes: str | None = None


class StorageRecordOut(BaseModel):
    id: str
    jobId: str
    jobNumber: str
    customerName: str
    moveType: str
    fromShort: str | None = None
    toShort: str | None = None
    facility: str
    status: str
    dateIn: str | None = None
    dateOut: str | None = None
    nextBillDate: str | None = None
    lotNumber: str | None = None
    locationLabel: str | None = None
    vaults: int
    pads: int
    items: int
    oversizeItems: int
    volume: int
    monthlyRateCents: int | None = None
    storageBalanceCents: int
    moveBalanceCents: int
    lastPaymentAt: str | None = None
    notes: str | None = None
    createdAt: str
    updatedAt: str


class StorageEnvelope(BaseModel):
    storage: StorageRecordOut
    requestId: str


class StorageListItem(BaseModel):
    storageRecordId: str | None = None
    jobId: str
    jobNumber: str
    customerName: str
    moveType: str | None = None
    fromShort: str | None = None
    toShort: str | None = None
    facility: str
    status: str | None = None
    dateIn: str | None = None
    dateOut: str | None = None
    nextBillDate: str | None = None
    lotNumber: str | None = None
    locationLabel: str | None = None
    vaults: int
    pads: int
    items: int
    oversizeItems: int
    volume: int
    monthlyRateCents: int | None = None
    storageBalanceCents: int
    moveBalanceCents: int


class StorageListResponse(BaseModel):
    items: list[StorageListItem]
    nextCursor: str | None = None
    requestId: str


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _job_context(job: models.Job) -> dict:
    estimate = job.estimate
    return {
        "jobNumber": job.job_number,
        "customerName": customer_display_name(job.customer),
        "moveType": job.job_type or "local",
        "fromShort": short_place(estimate.origin_city, estimate.origin_state) if estimate else None,
        "toShort": short_place(estimate.destination_city, estimate.destination_state) if estimate else None,
    }


def _record_fields(record: models.StorageRecord) -> dict:
    return {
        "facility": record.facility,
        "status": record.status,
        "dateIn": iso_date(record.date_in),
        "dateOut": iso_date(record.date_out),
        "nextBillDate": iso_date(record.next_bill_date),
        "lotNumber": record.lot_number,
        "locationLabel": record.location_label,
        "vaults": record.vaults or 0,
        "pads": record.pads or 0,
        "items": record.items or 0,
        "oversizeItems": record.oversize_items or 0,
        "volume": record.volume or 0,
        "monthlyRateCents": record.monthly_rate_cents,
        "storageBalanceCents": record.storage_balance_cents or 0,
        "moveBalanceCents": record.move_balance_cents or 0,
    }


def storage_out(record: models.StorageRecord) -> StorageRecordOut:
    return StorageRecordOut(
        id=record.id,
        jobId=record.job_id,
        lastPaymentAt=iso_timestamp(record.last_payment_at),
        notes=record.notes,
        createdAt=iso_timestamp(record.created_at),
        updatedAt=iso_timestamp(record.updated_at),
        **_job_context(record.job),
        **_record_fields(record),
    )


def _load_record(db: Session, tenant_id: str, record_id: str) -> models.StorageRecord:
    record = (
        db.query(models.StorageRecord)
        .filter(models.StorageRecord.id == record_id, models.StorageRecord.tenant_id == tenant_id)
        .first()
    )
    if not record:
        raise not_found("storage_record_not_found", "Storage record was not found")
    return record


def _validate_dates(facility: str, date_in: date | None, date_out: date | None) -> str:
    facility = facility.strip()
    if not facility:
        raise validation_error("facility is required")
    if date_in and date_out and date_in > date_out:
        raise validation_error("dateIn must be on or before dateOut")
    return facility


def encode_cursor(updated_at: datetime, job_id: str) -> str:
    payload = f"{iso_timestamp(updated_at)}|{job_id}"
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(raw: str) -> tuple[datetime, str]:
    text = raw.strip()
    try:
        decoded = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4)).decode("utf-8")
        stamp, job_id = decoded.split("|", 1)
        return parse_iso_timestamp(stamp), parse_uuid(job_id, "invalid_cursor", "Cursor")
    except (binascii.Error, UnicodeDecodeError, ValueError, ApiError):
        raise ApiError(400, "invalid_cursor", "cursor is invalid")


def _strict_bool(name: str, value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"true", "1"}:
        return True
    if normalized in {"false", "0"}:
        return False
    raise validation_error(f"{name} must be a boolean")


def _storage_changes(before: dict, after: dict) -> dict:
    changes = {}
    for field, previous in before.items():
        current = after[field]
        if previous == current:
            continue
        if field == "notes":
            changes["notesChanged"] = {"before": previous is not None, "after": current is not None}
        else:
            changes[field] = {"before": previous, "after": current}
    return changes


def _audit_snapshot(record: models.StorageRecord) -> dict:
    snapshot = _record_fields(record)
    snapshot["lastPaymentAt"] = rfc3339_seconds(record.last_payment_at) or None
    snapshot["notes"] = record.notes
    return snapshot


@router.post(
    "/jobs/{job_id}/storage",
    response_model=StorageEnvelope,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_storage_record(
    job_id: str,
    payload: StorageCreate,
    request: Request,
    actor: Actor = Depends(require_permission("storage.write")),
    db: Session = Depends(get_db),
):
    job_id = parse_uuid(job_id, "invalid_job_id", "Job")
    facility = _validate_dates(payload.facility, payload.dateIn, payload.dateOut)
    job = load_job(db, actor.tenant_id, job_id)

    existing = (
        db.query(models.StorageRecord)
        .filter(models.StorageRecord.tenant_id == actor.tenant_id, models.StorageRecord.job_id == job.id)
        .first()
    )
    if existing:
        raise conflict(
            "storage_record_exists",
            "Storage record already exists for this job",
            {"storageRecordId": existing.id},
        )

    record = models.StorageRecord(
        tenant_id=actor.tenant_id,
        job_id=job.id,
        facility=facility,
        status=payload.status.value if payload.status else "in_storage",
        date_in=payload.dateIn,
        date_out=payload.dateOut,
        next_bill_date=payload.nextBillDate,
        lot_number=clean_optional(payload.lotNumber),
        location_label=clean_optional(payload.locationLabel),
        vaults=payload.vaults or 0,
        pads=payload.pads or 0,
        items=payload.items or 0,
        oversize_items=payload.oversizeItems or 0,
        volume=payload.volume or 0,
        monthly_rate_cents=payload.monthlyRateCents,
        storage_balance_cents=payload.storageBalanceCents or 0,
        move_balance_cents=payload.moveBalanceCents or 0,
        last_payment_at=_naive_utc(payload.lastPaymentAt),
        notes=clean_optional(payload.notes),
        created_by=actor.user_id,
        updated_by=actor.user_id,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise conflict("storage_record_exists", "Storage record already exists for this job")
    db.refresh(record)

    log_audit(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        action="storage_record.create",
        entity_type="storage_record",
        entity_id=record.id,
        request_id=request_id_for(request),
        metadata={"jobId": record.job_id, "facility": record.facility, "status": record.status},
    )
    return StorageEnvelope(storage=storage_out(record), requestId=request_id_for(request))


@router.get("/storage", response_model=StorageListResponse)
def list_storage(
    request: Request,
    facility: str | None = Query(None),
    q: str | None = Query(None),
    status: StorageStatus | None = Query(None),
    hasDateOut: str | None = Query(None),
    balanceDue: str | None = Query(None),
    hasContainers: str | None = Query(None),
    pastDueDays: int | None = Query(None),
    limit: int | None = Query(None),
    cursor: str | None = Query(None),
    actor: Actor = Depends(require_permission("storage.read")),
    db: Session = Depends(get_db),
):
    facility = (facility or "").strip()
    if not facility:
        raise validation_error("facility query parameter is required")

    page_size = DEFAULT_LIST_LIMIT
    if limit is not None:
        if limit < 1:
            raise validation_error("limit must be at least 1")
        page_size = min(limit, MAX_LIST_LIMIT)

    cursor_position = None
    if cursor is not None and cursor.strip():
        cursor_position = decode_cursor(cursor)

    if pastDueDays is not None and pastDueDays < 0:
        raise validation_error("pastDueDays must be greater than or equal to 0")

    has_date_out = _strict_bool("hasDateOut", hasDateOut)
    balance_due = _strict_bool("balanceDue", balanceDue)
    has_containers = _strict_bool("hasContainers", hasContainers)

    record = models.StorageRecord
    balance = record.storage_balance_cents + record.move_balance_cents
    containers = or_(
        record.vaults > 0,
        record.pads > 0,
        record.items > 0,
        record.oversize_items > 0,
        record.volume > 0,
    )

    query = (
        db.query(record, models.Job)
        .join(models.Job, (models.Job.id == record.job_id) & (models.Job.tenant_id == record.tenant_id))
        .join(models.Customer, models.Customer.id == models.Job.customer_id)
        .filter(record.tenant_id == actor.tenant_id, record.facility == facility)
    )

    search = clean_optional(q)
    if search:
        needle = f"%{search.lower()}%"
        full_name = func.lower(models.Customer.first_name + " " + models.Customer.last_name)
        query = query.filter(or_(full_name.like(needle), func.lower(models.Job.job_number).like(needle)))
    if status is not None:
        query = query.filter(record.status == status.value)
    if has_date_out is not None:
        query = query.filter(record.date_out.isnot(None) if has_date_out else record.date_out.is_(None))
    if balance_due is not None:
        query = query.filter(balance > 0 if balance_due else balance <= 0)
    if has_containers is not None:
        query = query.filter(containers if has_containers else ~containers)
    if pastDueDays is not None:
        threshold = date.today() - timedelta(days=pastDueDays)
        query = query.filter(
            balance > 0,
            record.next_bill_date.isnot(None),
            record.next_bill_date <= threshold,
        )
    if cursor_position is not None:
        cursor_at, cursor_job = cursor_position
        query = query.filter(
            or_(
                record.updated_at < cursor_at,
                and_(record.updated_at == cursor_at, record.job_id < cursor_job),
            )
        )

    rows = query.order_by(record.updated_at.desc(), record.job_id.desc()).limit(page_size + 1).all()

    next_cursor = None
    if len(rows) > page_size:
        last_record, _ = rows[page_size - 1]
        next_cursor = encode_cursor(last_record.updated_at, last_record.job_id)
        rows = rows[:page_size]

    items = [
        StorageListItem(
            storageRecordId=storage.id,
            jobId=job.id,
            **_job_context(job),
            **_record_fields(storage),
        )
        for storage, job in rows
    ]
    return StorageListResponse(items=items, nextCursor=next_cursor, requestId=request_id_for(request))


@router.get("/storage/{record_id}", response_model=StorageEnvelope)
def get_storage_record(
    record_id: str,
    request: Request,
    actor: Actor = Depends(require_permission("storage.read")),
    db: Session = Depends(get_db),
):
    record_id = parse_uuid(record_id, "invalid_storage_record_id", "Storage record")
    record = _load_record(db, actor.tenant_id, record_id)
    return StorageEnvelope(storage=storage_out(record), requestId=request_id_for(request))


@router.put(
    "/storage/{record_id}",
    response_model=StorageEnvelope,
    dependencies=[Depends(require_csrf)],
)
def replace_storage_record(
    record_id: str,
    payload: StorageUpdate,
    request: Request,
    actor: Actor = Depends(require_permission("storage.write")),
    db: Session = Depends(get_db),
):
    record_id = parse_uuid(record_id, "invalid_storage_record_id", "Storage record")
    facility = _validate_dates(payload.facility, payload.dateIn, payload.dateOut)
    record = _load_record(db, actor.tenant_id, record_id)
    before = _audit_snapshot(record)

    record.facility = facility
    record.status = payload.status.value
    record.date_in = payload.dateIn
    record.date_out = payload.dateOut
    record.next_bill_date = payload.nextBillDate
    record.lot_number = clean_optional(payload.lotNumber)
    record.location_label = clean_optional(payload.locationLabel)
    record.vaults = payload.vaults
    record.pads = payload.pads
    record.items = payload.items
    record.oversize_items = payload.oversizeItems
    record.volume = payload.volume
    record.monthly_rate_cents = payload.monthlyRateCents
    record.storage_balance_cents = payload.storageBalanceCents
    record.move_balance_cents = payload.moveBalanceCents
    record.last_payment_at = _naive_utc(payload.lastPaymentAt)
    record.notes = clean_optional(payload.notes)
    record.updated_by = actor.user_id
    record.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(record)

    log_audit(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        action="storage_record.update",
        entity_type="storage_record",
        entity_id=record.id,
        request_id=request_id_for(request),
        metadata={"fieldsChanged": _storage_changes(before, _audit_snapshot(record))},
    )
    return StorageEnvelope(storage=storage_out(record), requestId=request_id_for(request))
