from datetime import date

from fastapi import APIRouter, Depends, Header, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.v1.customers import find_customer_by_email
from app.api.v1.jobs import JobEnvelope, job_out
from app.core.errors import ApiError, conflict, not_found, request_id_for, validation_error
from app.core.security import Actor, require_csrf, require_permission
from app.db import models
from app.db.session import get_db
from app.services.audit import log_audit
from app.services.formatting import clean_optional, iso_date, iso_timestamp, parse_uuid, split_name
from app.services.idempotency import IDEMPOTENCY_HEADER, payload_hash, read_idempotency_key
from app.services.numbering import next_estimate_number, next_job_number

router = APIRouter(tags=["Estimates"])

PAYLOAD_REUSE_MESSAGE = "Idempotency key was already used with a different payload"
CONVERT_REUSE_MESSAGE = "Idempotency key was already used for a different estimate conversion"

# Order matters: it drives both the payload fingerprint and fieldsChanged.
ESTIMATE_FIELDS = (
    ("customerName", "customer_name"),
    ("primaryPhone", "primary_phone"),
    ("secondaryPhone", "secondary_phone"),
    ("email", "email"),
    ("originAddressLine1", "origin_address_line1"),
    ("originCity", "origin_city"),
    ("originState", "origin_state"),
    ("originPostalCode", "origin_postal_code"),
    ("destinationAddressLine1", "destination_address_line1"),
    ("destinationCity", "destination_city"),
    ("destinationState", "destination_state"),
    ("destinationPostalCode", "destination_postal_code"),
    ("moveDate", "move_date"),
    ("pickupTime", "pickup_time"),
    ("leadSource", "lead_source"),
    ("moveSize", "move_size"),
    ("locationType", "location_type"),
    ("estimatedTotalCents", "estimated_total_cents"),
    ("depositCents", "deposit_cents"),
    ("notes", "notes"),
)
OPTIONAL_TEXT_FIELDS = {"secondaryPhone", "pickupTime", "moveSize", "locationType", "notes"}
CENTS_FIELDS = {"estimatedTotalCents", "depositCents"}


class EstimateCreate(BaseModel):
    customerName: str = Field(..., min_length=1)
    primaryPhone: str = Field(..., min_length=1)
    secondaryPhone: str | None = None
    email: str = Field(..., min_length=3)
    originAddressLine1: str = Field(..., min_length=1)
    originCity: str = Field(..., min_length=1)
    originState: str = Field(..., min_length=1)
    originPostalCode: str = Field(..., min_length=1)
    destinationAddressLine1: str = Field(..., min_length=1)
    destinationCity: str = Field(..., min_length=1)
    destinationState: str = Field(..., min_length=1)
    destinationPostalCode: str = Field(..., min_length=1)
    moveDate: date
    pickupTime: str | None = None
    leadSource: str = Field(..., min_length=1)
    moveSize: str | None = None
    locationType: str | None = None
    estimatedTotalCents: int | None = Field(None, ge=0)
    depositCents: int | None = Field(None, ge=0)
    notes: str | None = None


class EstimateUpdate(BaseModel):
    customerName: str | None = None
    primaryPhone: str | None = None
    secondaryPhone: str | None = None
    email: str | None = None
    originAddressLine1: str | None = None
    originCity: str | None = None
    originState: str | None = None
    originPostalCode: str | None = None
    destinationAddressLine1: str | None = None
    destinationCity: str | None = None
    destinationState: str | None = None
    destinationPostalCode: str | None = None
    moveDate: date | None = None
    pickupTime: str | None = None
    leadSource: str | None = None
    moveSize: str | None = None
    locationType: str | None = None
    estimatedTotalCents: int | None = Field(None, ge=0)
    depositCents: int | None = Field(None, ge=0)
    notes: str | None = None


class EstimateOut(BaseModel):
    id: str
    tenantId: str
    estimateNumber: str
    customerId: str
    customerName: str
    primaryPhone: str
    secondaryPhone: str | None = None
    email: str
    status: str
    originAddressLine1: str
    originCity: str
    originState: str
    originPostalCode: str
    destinationAddressLine1: str
    destinationCity: str
    destinationState: str
    destinationPostalCode: str
    moveDate: str
    pickupTime: str | None = None
    leadSource: str
    moveSize: str | None = None
    locationType: str | None = None
    estimatedTotalCents: int | None = None
    depositCents: int | None = None
    notes: str | None = None
    convertedJobId: str | None = None
    createdAt: str
    updatedAt: str


class EstimateEnvelope(BaseModel):
    estimate: EstimateOut
    requestId: str


def estimate_out(estimate: models.Estimate) -> EstimateOut:
    values = {api_name: getattr(estimate, column) for api_name, column in ESTIMATE_FIELDS}
    values["moveDate"] = iso_date(estimate.move_date)
    return EstimateOut(
        id=estimate.id,
        tenantId=estimate.tenant_id,
        estimateNumber=estimate.estimate_number,
        customerId=estimate.customer_id,
        status=estimate.status,
        convertedJobId=estimate.converted_job_id,
        createdAt=iso_timestamp(estimate.created_at),
        updatedAt=iso_timestamp(estimate.updated_at),
        **values,
    )


def _sanitized(payload: BaseModel) -> dict:
    """Trimmed field values; blank optional text becomes None."""
    values = {}
    for api_name, _ in ESTIMATE_FIELDS:
        value = getattr(payload, api_name)
        if isinstance(value, str):
            value = value.strip() if api_name not in OPTIONAL_TEXT_FIELDS else clean_optional(value)
        values[api_name] = value
    return values


def create_payload_hash(values: dict) -> str:
    fingerprint = {}
    for api_name, _ in ESTIMATE_FIELDS:
        value = values[api_name]
        if api_name == "moveDate":
            value = iso_date(value)
        if value is None and (api_name in OPTIONAL_TEXT_FIELDS or api_name in CENTS_FIELDS):
            continue
        fingerprint[api_name] = value
    return payload_hash(fingerprint)


def _estimate_by_key(db: Session, tenant_id: str, key: str) -> models.Estimate | None:
    return (
        db.query(models.Estimate)
        .filter(models.Estimate.tenant_id == tenant_id, models.Estimate.idempotency_key == key)
        .first()
    )


def _load_estimate(db: Session, tenant_id: str, estimate_id: str) -> models.Estimate:
    estimate = (
        db.query(models.Estimate)
        .filter(models.Estimate.id == estimate_id, models.Estimate.tenant_id == tenant_id)
        .first()
    )
    if not estimate:
        raise not_found("estimate_not_found", "Estimate was not found")
    return estimate


def _replay(existing: models.Estimate, digest: str) -> models.Estimate:
    if existing.idempotency_payload_hash != digest:
        raise ApiError(409, "IDEMPOTENCY_KEY_REUSE", PAYLOAD_REUSE_MESSAGE)
    return existing


def _customer_for_estimate(db: Session, actor: Actor, values: dict) -> models.Customer:
    first_name, last_name = split_name(values["customerName"])
    email = values["email"].lower()
    customer = find_customer_by_email(db, actor.tenant_id, email)
    if customer is None:
        customer = models.Customer(
            tenant_id=actor.tenant_id,
            email=email,
            created_by=actor.user_id,
        )
        db.add(customer)
    customer.first_name = first_name
    customer.last_name = last_name
    customer.phone = values["primaryPhone"]
    customer.updated_by = actor.user_id
    db.flush()
    return customer


def _insert_estimate(db: Session, actor: Actor, key: str, digest: str, values: dict) -> models.Estimate:
    estimate = models.Estimate(
        tenant_id=actor.tenant_id,
        estimate_number=next_estimate_number(db, actor.tenant_id),
        customer_id=_customer_for_estimate(db, actor, values).id,
        status="draft",
        idempotency_key=key,
        idempotency_payload_hash=digest,
        created_by=actor.user_id,
        updated_by=actor.user_id,
    )
    for api_name, column in ESTIMATE_FIELDS:
        setattr(estimate, column, values[api_name])
    db.add(estimate)
    db.commit()
    return estimate


@router.post(
    "/estimates",
    response_model=EstimateEnvelope,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_estimate(
    payload: EstimateCreate,
    request: Request,
    response: Response,
    idempotency_key: str | None = Header(None, alias=IDEMPOTENCY_HEADER),
    actor: Actor = Depends(require_permission("estimates.write")),
    db: Session = Depends(get_db),
):
    key = read_idempotency_key(idempotency_key)
    if not key:
        raise ApiError(400, "missing_idempotency_key", "Idempotency-Key header is required")

    values = _sanitized(payload)
    digest = create_payload_hash(values)
    request_id = request_id_for(request)

    existing = _estimate_by_key(db, actor.tenant_id, key)
    if existing:
        response.status_code = 200
        return EstimateEnvelope(estimate=estimate_out(_replay(existing, digest)), requestId=request_id)

    estimate = None
    # A second attempt picks up a customer inserted concurrently with the same email.
    for _ in range(2):
        try:
            estimate = _insert_estimate(db, actor, key, digest, values)
            break
        except IntegrityError:
            db.rollback()
            existing = _estimate_by_key(db, actor.tenant_id, key)
            if existing is not None:
                response.status_code = 200
                return EstimateEnvelope(estimate=estimate_out(_replay(existing, digest)), requestId=request_id)
    if estimate is None:
        raise conflict("customer_exists", "Customer with this email already exists")

    db.refresh(estimate)
    log_audit(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        action="estimate.create",
        entity_type="estimate",
        entity_id=estimate.id,
        request_id=request_id,
        metadata={
            "estimateNumber": estimate.estimate_number,
            "status": estimate.status,
            "leadSource": estimate.lead_source,
            "moveDate": iso_date(estimate.move_date),
        },
    )
    return EstimateEnvelope(estimate=estimate_out(estimate), requestId=request_id)


@router.get("/estimates/{estimate_id}", response_model=EstimateEnvelope)
def get_estimate(
    estimate_id: str,
    request: Request,
    actor: Actor = Depends(require_permission("estimates.read")),
    db: Session = Depends(get_db),
):
    estimate_id = parse_uuid(estimate_id, "invalid_estimate_id", "Estimate")
    estimate = _load_estimate(db, actor.tenant_id, estimate_id)
    return EstimateEnvelope(estimate=estimate_out(estimate), requestId=request_id_for(request))


@router.patch(
    "/estimates/{estimate_id}",
    response_model=EstimateEnvelope,
    dependencies=[Depends(require_csrf)],
)
def update_estimate(
    estimate_id: str,
    payload: EstimateUpdate,
    request: Request,
    actor: Actor = Depends(require_permission("estimates.write")),
    db: Session = Depends(get_db),
):
    estimate_id = parse_uuid(estimate_id, "invalid_estimate_id", "Estimate")
    if all(getattr(payload, api_name) is None for api_name, _ in ESTIMATE_FIELDS):
        raise validation_error("At least one field must be provided")

    estimate = _load_estimate(db, actor.tenant_id, estimate_id)
    before = {api_name: getattr(estimate, column) for api_name, column in ESTIMATE_FIELDS}

    values = {}
    for api_name, value in _sanitized(payload).items():
        if value is None or (isinstance(value, str) and not value):
            continue
        values[api_name] = value
    for api_name, column in ESTIMATE_FIELDS:
        if api_name in values:
            setattr(estimate, column, values[api_name])
    estimate.updated_by = actor.user_id

    # The linked customer always mirrors the estimate's contact fields.
    customer = (
        db.query(models.Customer)
        .filter(models.Customer.id == estimate.customer_id, models.Customer.tenant_id == actor.tenant_id)
        .first()
    )
    if customer is not None:
        customer.first_name, customer.last_name = split_name(estimate.customer_name)
        customer.email = estimate.email.lower()
        customer.phone = estimate.primary_phone
        customer.updated_by = actor.user_id

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise conflict("customer_exists", "Customer with this email already exists")
    db.refresh(estimate)

    changed = [
        api_name
        for api_name, column in ESTIMATE_FIELDS
        if before[api_name] != getattr(estimate, column)
    ]
    if changed:
        log_audit(
            db,
            tenant_id=actor.tenant_id,
            user_id=actor.user_id,
            action="estimate.update",
            entity_type="estimate",
            entity_id=estimate.id,
            request_id=request_id_for(request),
            metadata={"fieldsChanged": changed},
        )
    return EstimateEnvelope(estimate=estimate_out(estimate), requestId=request_id_for(request))


def _job_by_convert_key(db: Session, tenant_id: str, key: str) -> models.Job | None:
    return (
        db.query(models.Job)
        .filter(models.Job.tenant_id == tenant_id, models.Job.convert_idempotency_key == key)
        .first()
    )


def _job_by_estimate(db: Session, tenant_id: str, estimate_id: str) -> models.Job | None:
    return (
        db.query(models.Job)
        .filter(models.Job.tenant_id == tenant_id, models.Job.estimate_id == estimate_id)
        .first()
    )


def _mark_converted(db: Session, estimate: models.Estimate, job: models.Job, user_id: str) -> None:
    estimate.status = "converted"
    estimate.converted_job_id = job.id
    estimate.updated_by = user_id


@router.post(
    "/estimates/{estimate_id}/convert",
    response_model=JobEnvelope,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def convert_estimate(
    estimate_id: str,
    request: Request,
    response: Response,
    idempotency_key: str | None = Header(None, alias=IDEMPOTENCY_HEADER),
    actor: Actor = Depends(require_permission("estimates.convert")),
    db: Session = Depends(get_db),
):
    estimate_id = parse_uuid(estimate_id, "invalid_estimate_id", "Estimate")
    key = read_idempotency_key(idempotency_key)
    if not key:
        raise ApiError(400, "missing_idempotency_key", "Idempotency-Key header is required")
    request_id = request_id_for(request)

    by_key = _job_by_convert_key(db, actor.tenant_id, key)
    if by_key is not None:
        if by_key.estimate_id != estimate_id:
            raise ApiError(409, "IDEMPOTENCY_KEY_REUSE", CONVERT_REUSE_MESSAGE)
        response.status_code = 200
        return JobEnvelope(job=job_out(by_key), requestId=request_id)

    estimate = _load_estimate(db, actor.tenant_id, estimate_id)

    created = False
    job = _job_by_estimate(db, actor.tenant_id, estimate_id)
    if job is None:
        try:
            job = models.Job(
                tenant_id=actor.tenant_id,
                job_number=next_job_number(db, actor.tenant_id),
                estimate_id=estimate.id,
                customer_id=estimate.customer_id,
                status="booked",
                scheduled_date=estimate.move_date,
                pickup_time=estimate.pickup_time,
                convert_idempotency_key=key,
                created_by=actor.user_id,
                updated_by=actor.user_id,
            )
            db.add(job)
            db.flush()
            _mark_converted(db, estimate, job, actor.user_id)
            db.commit()
            created = True
        except IntegrityError:
            db.rollback()
            job = _job_by_estimate(db, actor.tenant_id, estimate_id)
            if job is None:
                job = _job_by_convert_key(db, actor.tenant_id, key)
                if job is None or job.estimate_id != estimate_id:
                    raise ApiError(409, "IDEMPOTENCY_KEY_REUSE", CONVERT_REUSE_MESSAGE)
            estimate = _load_estimate(db, actor.tenant_id, estimate_id)

    if not created:
        _mark_converted(db, estimate, job, actor.user_id)
        db.commit()
        response.status_code = 200

    db.refresh(job)
    log_audit(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        action="estimate.convert_to_job",
        entity_type="estimate",
        entity_id=estimate_id,
        request_id=request_id,
        metadata={"jobId": job.id, "jobNumber": job.job_number, "created": created},
    )
    return JobEnvelope(job=job_out(job), requestId=request_id)
