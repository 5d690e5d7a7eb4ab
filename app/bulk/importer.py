import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.bulk.config import (
    MODE_APPLY,
    MODE_DRY_RUN,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARN,
    CanonicalRow,
    build_canonical_row,
    build_customer_key,
    build_estimate_key,
    build_job_key,
    date_or_none,
    has_estimate_fields,
    has_storage_fields,
    int_or_zero,
    money_or_none,
    non_empty,
    normalize_email,
    normalize_job_status,
    normalize_phone,
    normalize_storage_status,
    optional_text,
    parse_flexible_date,
    short_hash,
    truncate,
)
from app.bulk.parser import ParsedImport
from app.core.errors import ApiError, not_found
from app.db import models
from app.services.audit import log_audit
from app.services.formatting import NIL_UUID, split_name

logger = logging.getLogger("moveops.imports")

TOP_MESSAGES_LIMIT = 100
MESSAGE_MAX_LENGTH = 500
ESTIMATE_REQUIRED_MESSAGE = (
    "origin_zip, destination_zip, and requested_pickup_date are required to create/update estimates"
)
SUMMARY_KEYS = {
    "customer": "customer",
    "estimate": "estimate",
    "job": "job",
    "storage_record": "storageRecord",
}


class ImportFailedError(Exception):
    """Processing stopped before every row was recorded."""

    def __init__(self, message: str, summary: dict) -> None:
        super().__init__(message)
        self.summary = summary


class RowProcessingError(Exception):
    pass


@dataclass
class RowOutcome:
    entity_type: str
    idempotency_key: str
    message: str
    severity: str = SEVERITY_INFO
    result: str = "skipped"
    field: Optional[str] = None
    raw_value: Optional[str] = None
    target_entity_id: Optional[str] = None

    def warn(self, message: str) -> None:
        self.severity = SEVERITY_WARN
        self.message = message

    def fail(self, message: str, field_name: Optional[str] = None, raw_value: Optional[str] = None) -> None:
        self.severity = SEVERITY_ERROR
        self.result = "error"
        self.message = message
        self.field = field_name
        self.raw_value = raw_value
        self.target_entity_id = None

    def as_message(self, row_number: int) -> dict:
        return {
            "rowNumber": row_number,
            "severity": self.severity,
            "entityType": self.entity_type,
            "result": self.result,
            "idempotencyKey": self.idempotency_key,
            "field": self.field,
            "message": truncate(self.message, MESSAGE_MAX_LENGTH),
            "rawValue": self.raw_value,
            "targetEntityId": self.target_entity_id,
        }


@dataclass
class ImportContext:
    db: Session
    tenant_id: str
    user_id: str
    mode: str

    @property
    def dry_run(self) -> bool:
        return self.mode == MODE_DRY_RUN


@dataclass
class ImportResult:
    run: models.ImportRun
    summary: dict
    messages: List[dict] = field(default_factory=list)

    @property
    def top_warnings(self) -> List[dict]:
        return top_messages(self.messages, SEVERITY_WARN)

    @property
    def top_errors(self) -> List[dict]:
        return top_messages(self.messages, SEVERITY_ERROR)


def empty_summary() -> dict:
    summary: Dict[str, object] = {"rowsTotal": 0, "rowsValid": 0, "rowsError": 0}
    for key in SUMMARY_KEYS.values():
        summary[key] = {"created": 0, "updated": 0, "skipped": 0, "error": 0}
    return summary


def increment_summary(summary: dict, entity_type: str, result: str) -> None:
    key = SUMMARY_KEYS.get(entity_type)
    if key is None:
        return
    bucket = result if result in ("created", "updated", "error") else "skipped"
    summary[key][bucket] += 1


def top_messages(messages: List[dict], severity: str, limit: int = TOP_MESSAGES_LIMIT) -> List[dict]:
    filtered = [message for message in messages if message["severity"] == severity]
    filtered.sort(key=lambda message: (message["rowNumber"], message["entityType"]))
    if limit > 0:
        filtered = filtered[:limit]
    return filtered


def _mapped_target(ctx: ImportContext, entity_type: str, key: str) -> Optional[str]:
    mapped = (
        ctx.db.query(models.ImportIdempotency)
        .filter(
            models.ImportIdempotency.tenant_id == ctx.tenant_id,
            models.ImportIdempotency.entity_type == entity_type,
            models.ImportIdempotency.idempotency_key == key,
        )
        .first()
    )
    return mapped.target_entity_id if mapped else None


def _remember(ctx: ImportContext, entity_type: str, key: str, target_id: str) -> None:
    mapped = (
        ctx.db.query(models.ImportIdempotency)
        .filter(
            models.ImportIdempotency.tenant_id == ctx.tenant_id,
            models.ImportIdempotency.entity_type == entity_type,
            models.ImportIdempotency.idempotency_key == key,
        )
        .first()
    )
    if mapped:
        mapped.target_entity_id = target_id
    else:
        ctx.db.add(
            models.ImportIdempotency(
                tenant_id=ctx.tenant_id,
                entity_type=entity_type,
                idempotency_key=key,
                target_entity_id=target_id,
            )
        )
    ctx.db.flush()


def _tenant_get(ctx: ImportContext, model, entity_id: Optional[str]):
    if not entity_id:
        return None
    return ctx.db.query(model).filter(model.id == entity_id, model.tenant_id == ctx.tenant_id).first()


def _customer_by_email(ctx: ImportContext, email: str) -> Optional[models.Customer]:
    return (
        ctx.db.query(models.Customer)
        .filter(models.Customer.tenant_id == ctx.tenant_id, func.lower(models.Customer.email) == email)
        .first()
    )


def _upsert_customer(
    ctx: ImportContext,
    outcomes: List[RowOutcome],
    name: str,
    email: str,
    phone: str,
    phone_secondary: str,
) -> Optional[str]:
    key = build_customer_key(name, email, phone)
    outcome = RowOutcome("customer", key, "Customer unchanged")
    outcomes.append(outcome)

    existing = _tenant_get(ctx, models.Customer, _mapped_target(ctx, "customer", key))
    if existing is None and email:
        existing = _customer_by_email(ctx, email)
    if existing is None and phone:
        existing = (
            ctx.db.query(models.Customer)
            .filter(models.Customer.tenant_id == ctx.tenant_id, models.Customer.phone == phone)
            .first()
        )

    first_name, last_name = split_name(non_empty(name, "Imported Customer"))
    email_value = email or None
    phone_value = phone or phone_secondary or None

    if existing is None:
        outcome.result = "created"
        outcome.message = "Customer will be created" if ctx.dry_run else "Customer created"
        if not email and not phone:
            outcome.warn("Customer created without email/phone using name fallback")
        if ctx.dry_run:
            return None

        customer = models.Customer(
            tenant_id=ctx.tenant_id,
            first_name=first_name,
            last_name=last_name,
            email=email_value,
            phone=phone_value,
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
        )
        ctx.db.add(customer)
        try:
            ctx.db.flush()
        except IntegrityError:
            # lost a race on customers_tenant_email_uidx; the row has no other writes yet
            ctx.db.rollback()
            existing = _customer_by_email(ctx, email) if email else None
            if existing is None:
                raise
        else:
            outcome.target_entity_id = customer.id
            _remember(ctx, "customer", key, customer.id)
            return customer.id

    outcome.result = "updated"
    if outcome.severity == SEVERITY_INFO:
        outcome.message = "Customer updated"
    outcome.target_entity_id = existing.id
    if ctx.dry_run:
        return existing.id

    existing.first_name = first_name
    existing.last_name = last_name
    if email_value:
        existing.email = email_value
    if phone_value:
        existing.phone = phone_value
    existing.updated_by = ctx.user_id
    ctx.db.flush()
    _remember(ctx, "customer", key, existing.id)
    return existing.id


def _upsert_estimate(
    ctx: ImportContext,
    outcomes: List[RowOutcome],
    row: CanonicalRow,
    customer_id: Optional[str],
    name: str,
    email: str,
    phone: str,
) -> Optional[str]:
    if not has_estimate_fields(row):
        return None

    key = build_estimate_key(row, name, email, phone)
    outcome = RowOutcome("estimate", key, "Estimate unchanged")
    outcomes.append(outcome)

    try:
        move_date, date_warning = parse_flexible_date(row["requested_pickup_date"])
    except ValueError:
        outcome.fail(
            "Invalid requested_pickup_date",
            "requested_pickup_date",
            row["requested_pickup_date"],
        )
        return None
    for field_name in ("origin_zip", "destination_zip", "requested_pickup_date"):
        if not row[field_name]:
            outcome.fail(ESTIMATE_REQUIRED_MESSAGE, field_name)
            return None

    estimate_number = row["estimate_number"] or "IMP-E-" + short_hash(key, 10)
    existing = _tenant_get(ctx, models.Estimate, _mapped_target(ctx, "estimate", key))
    if existing is None:
        existing = (
            ctx.db.query(models.Estimate)
            .filter(
                models.Estimate.tenant_id == ctx.tenant_id,
                models.Estimate.estimate_number == estimate_number,
            )
            .first()
        )

    values = {
        "customer_name": non_empty(name, "Imported Customer"),
        "primary_phone": non_empty(phone, "n/a"),
        "email": non_empty(email, "import@moveops.local"),
        "origin_address_line1": "Imported origin",
        "origin_city": non_empty(row["origin_city"], "Unknown"),
        "origin_state": non_empty(row["origin_state"], "NA"),
        "origin_postal_code": row["origin_zip"],
        "destination_address_line1": "Imported destination",
        "destination_city": non_empty(row["destination_city"], "Unknown"),
        "destination_state": non_empty(row["destination_state"], "NA"),
        "destination_postal_code": row["destination_zip"],
        "move_date": move_date,
        "pickup_time": optional_text(non_empty(row["pickup_time"], row["requested_pickup_time"])),
        "lead_source": non_empty(row["lead_source"], "Import"),
        "move_size": optional_text(row["job_type"]),
        "estimated_total_cents": money_or_none(row["estimated_total"]),
        "deposit_cents": money_or_none(row["deposit"]),
        "notes": optional_text(row["pricing_notes"]),
    }

    if existing is None:
        outcome.result = "created"
        outcome.message = "Estimate created"
        if date_warning:
            outcome.warn(date_warning)
        if ctx.dry_run:
            return None
        estimate = models.Estimate(
            tenant_id=ctx.tenant_id,
            estimate_number=estimate_number,
            customer_id=customer_id,
            status="draft",
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
            **values,
        )
        ctx.db.add(estimate)
        ctx.db.flush()
        outcome.target_entity_id = estimate.id
        _remember(ctx, "estimate", key, estimate.id)
        return estimate.id

    outcome.result = "updated"
    outcome.message = "Estimate updated"
    if date_warning:
        outcome.warn(date_warning)
    outcome.target_entity_id = existing.id
    if ctx.dry_run:
        return existing.id

    for column, value in values.items():
        setattr(existing, column, value)
    existing.customer_id = customer_id
    if existing.status != "converted":
        existing.status = "draft"
    existing.updated_by = ctx.user_id
    ctx.db.flush()
    _remember(ctx, "estimate", key, existing.id)
    return existing.id


def _upsert_job(
    ctx: ImportContext,
    outcomes: List[RowOutcome],
    row: CanonicalRow,
    customer_id: Optional[str],
    estimate_id: Optional[str],
) -> Tuple[Optional[str], str]:
    key = build_job_key(row, customer_id or NIL_UUID)
    outcome = RowOutcome("job", key, "Job unchanged")
    outcomes.append(outcome)

    job_number = row["job_number"]
    number_warning = ""
    if not job_number:
        job_number = "IMP-J-" + short_hash(key, 10)
        number_warning = "job_number missing, generated deterministic import job number"

    existing = _tenant_get(ctx, models.Job, _mapped_target(ctx, "job", key))
    if existing is None:
        existing = (
            ctx.db.query(models.Job)
            .filter(models.Job.tenant_id == ctx.tenant_id, models.Job.job_number == job_number)
            .first()
        )

    scheduled_date = date_or_none(non_empty(row["scheduled_date"], row["requested_pickup_date"]))
    pickup_time = optional_text(non_empty(row["pickup_time"], row["requested_pickup_time"]))
    status = normalize_job_status(non_empty(row["status"], row["phase"]))
    job_type = optional_text(row["job_type"])

    if existing is None:
        outcome.result = "created"
        outcome.message = "Job created"
        if number_warning:
            outcome.warn(number_warning)
        if ctx.dry_run:
            return None, key
        job = models.Job(
            tenant_id=ctx.tenant_id,
            job_number=job_number,
            estimate_id=estimate_id,
            customer_id=customer_id,
            status=status,
            scheduled_date=scheduled_date,
            pickup_time=pickup_time,
            job_type=job_type,
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
        )
        ctx.db.add(job)
        ctx.db.flush()
        outcome.target_entity_id = job.id
        _remember(ctx, "job", key, job.id)
        return job.id, key

    outcome.result = "updated"
    outcome.message = "Job updated"
    if number_warning:
        outcome.warn(number_warning)
    outcome.target_entity_id = existing.id
    if ctx.dry_run:
        return existing.id, key

    existing.customer_id = customer_id
    if estimate_id:
        existing.estimate_id = estimate_id
    existing.status = status
    if scheduled_date is not None:
        existing.scheduled_date = scheduled_date
    if pickup_time is not None:
        existing.pickup_time = pickup_time
    if job_type is not None:
        existing.job_type = job_type
    existing.updated_by = ctx.user_id
    ctx.db.flush()
    _remember(ctx, "job", key, existing.id)
    return existing.id, key


def _upsert_storage(
    ctx: ImportContext,
    outcomes: List[RowOutcome],
    row: CanonicalRow,
    job_id: Optional[str],
    job_key: str,
) -> None:
    key = "storage:" + job_key
    outcome = RowOutcome("storage_record", key, "Storage record unchanged")
    outcomes.append(outcome)

    facility = row["facility"]
    facility_warning = ""
    if not facility:
        facility = "Unassigned"
        facility_warning = "facility missing, defaulted to Unassigned"

    values = {
        "facility": facility,
        "status": normalize_storage_status(row["storage_status"]),
        "date_in": date_or_none(row["date_in"]),
        "date_out": date_or_none(row["date_out"]),
        "next_bill_date": date_or_none(row["next_bill_date"]),
        "lot_number": optional_text(row["lot_number"]),
        "location_label": optional_text(row["location_label"]),
        "vaults": int_or_zero(row["vaults"]),
        "pads": int_or_zero(row["pads"]),
        "items": int_or_zero(row["items"]),
        "oversize_items": int_or_zero(row["oversize_items"]),
        "volume": int_or_zero(row["volume"]),
        "monthly_rate_cents": money_or_none(row["monthly_rate"]),
        "storage_balance_cents": money_or_none(row["storage_balance"]) or 0,
        "move_balance_cents": money_or_none(row["move_balance"]) or 0,
    }
    notes = optional_text(row["pricing_notes"])

    existing = None
    if job_id:
        existing = (
            ctx.db.query(models.StorageRecord)
            .filter(models.StorageRecord.tenant_id == ctx.tenant_id, models.StorageRecord.job_id == job_id)
            .first()
        )

    if existing is None:
        outcome.result = "created"
        outcome.message = "Storage record created"
        if facility_warning:
            outcome.warn(facility_warning)
        if ctx.dry_run:
            return
        record = models.StorageRecord(
            tenant_id=ctx.tenant_id,
            job_id=job_id,
            notes=notes,
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
            **values,
        )
        ctx.db.add(record)
        ctx.db.flush()
        outcome.target_entity_id = record.id
        _remember(ctx, "storage_record", key, record.id)
        return

    outcome.result = "updated"
    outcome.message = "Storage record updated"
    if facility_warning:
        outcome.warn(facility_warning)
    outcome.target_entity_id = existing.id
    if ctx.dry_run:
        return

    for column, value in values.items():
        setattr(existing, column, value)
    if notes is not None:
        existing.notes = notes
    existing.updated_by = ctx.user_id
    ctx.db.flush()
    _remember(ctx, "storage_record", key, existing.id)


def process_row(ctx: ImportContext, row: CanonicalRow, outcomes: List[RowOutcome]) -> None:
    """Run one canonical row through customer, estimate, job and storage.

    Outcomes are appended as each entity is reached so a failure leaves the
    failing entity's outcome last.
    """
    name = row["customer_name"].strip()
    email = normalize_email(row["email"])
    phone = normalize_phone(row["phone_primary"])
    phone_secondary = normalize_phone(row["phone_secondary"])

    if not name and not email and not phone:
        raise RowProcessingError("customer_name or email/phone_primary is required")

    customer_id = _upsert_customer(ctx, outcomes, name, email, phone, phone_secondary)
    estimate_id = _upsert_estimate(ctx, outcomes, row, customer_id, name, email, phone)
    job_id, job_key = _upsert_job(ctx, outcomes, row, customer_id, estimate_id)
    if has_storage_fields(row):
        _upsert_storage(ctx, outcomes, row, job_id, job_key)


def record_row_result(
    db: Session,
    *,
    tenant_id: str,
    import_run_id: str,
    row_number: int,
    outcome: RowOutcome,
) -> models.ImportRowResult:
    result = (
        db.query(models.ImportRowResult)
        .filter(
            models.ImportRowResult.import_run_id == import_run_id,
            models.ImportRowResult.row_number == row_number,
            models.ImportRowResult.entity_type == outcome.entity_type,
            models.ImportRowResult.idempotency_key == outcome.idempotency_key,
        )
        .first()
    )
    if result is None:
        result = models.ImportRowResult(
            tenant_id=tenant_id,
            import_run_id=import_run_id,
            row_number=row_number,
            entity_type=outcome.entity_type,
            idempotency_key=outcome.idempotency_key,
        )
        db.add(result)
    result.severity = outcome.severity
    result.result = outcome.result
    result.field = outcome.field
    result.message = truncate(outcome.message, MESSAGE_MAX_LENGTH)
    result.raw_value = outcome.raw_value
    result.target_entity_id = outcome.target_entity_id
    return result


def process_rows(ctx: ImportContext, run_id: str, parsed: ParsedImport) -> Tuple[dict, List[dict]]:
    summary = empty_summary()
    messages: List[dict] = []

    for offset, raw_row in enumerate(parsed.rows):
        summary["rowsTotal"] += 1
        row_number = offset + parsed.first_row_number()
        outcomes: List[RowOutcome] = []
        row_error: Optional[str] = None

        try:
            process_row(ctx, build_canonical_row(raw_row, parsed.mapping), outcomes)
        except RowProcessingError as exc:
            row_error = str(exc)
        except SQLAlchemyError as exc:
            ctx.db.rollback()
            logger.warning(
                "import row failed import_run_id=%s row_number=%s",
                run_id,
                row_number,
                exc_info=True,
            )
            row_error = str(getattr(exc, "orig", None) or exc)
            # the row's writes were rolled back; only the failing entity is reported
            if outcomes:
                failed = outcomes[-1]
                failed.fail(row_error)
                outcomes = [failed]

        if row_error is not None and not outcomes:
            outcomes.append(
                RowOutcome(
                    "customer",
                    f"row:{row_number}",
                    row_error,
                    severity=SEVERITY_ERROR,
                    result="error",
                )
            )

        try:
            for outcome in outcomes:
                record_row_result(
                    ctx.db,
                    tenant_id=ctx.tenant_id,
                    import_run_id=run_id,
                    row_number=row_number,
                    outcome=outcome,
                )
            ctx.db.commit()
        except SQLAlchemyError as exc:
            ctx.db.rollback()
            logger.exception("import row results not persisted import_run_id=%s row_number=%s", run_id, row_number)
            raise ImportFailedError(f"persist import row result: {exc}", summary)

        row_has_error = row_error is not None
        for outcome in outcomes:
            messages.append(outcome.as_message(row_number))
            increment_summary(summary, outcome.entity_type, outcome.result)
            if outcome.severity == SEVERITY_ERROR:
                row_has_error = True
        if row_has_error:
            summary["rowsError"] += 1
        else:
            summary["rowsValid"] += 1

    return summary, messages


def run_import(
    db: Session,
    *,
    tenant_id: str,
    user_id: str,
    mode: str,
    parsed: ParsedImport,
    request_id: str,
) -> ImportResult:
    if mode not in (MODE_DRY_RUN, MODE_APPLY):
        raise ValueError(f"unknown import mode: {mode}")

    run = models.ImportRun(
        tenant_id=tenant_id,
        created_by_user_id=user_id,
        source=parsed.source,
        filename=parsed.filename,
        file_sha256=parsed.file_sha256,
        mode=mode,
        status="failed",
        mapping_json=parsed.mapping_json(),
        summary_json={},
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    run_id = run.id

    base_metadata = {
        "mode": mode,
        "source": parsed.source,
        "filename": parsed.filename,
        "fileSha256": parsed.file_sha256,
    }
    log_audit(
        db,
        tenant_id=tenant_id,
        user_id=user_id,
        action=f"import.{mode}_started",
        entity_type="import_run",
        entity_id=run_id,
        request_id=request_id,
        metadata={**base_metadata, "rowsTotal": len(parsed.rows)},
    )

    ctx = ImportContext(db=db, tenant_id=tenant_id, user_id=user_id, mode=mode)
    failure: Optional[ImportFailedError] = None
    messages: List[dict] = []
    try:
        summary, messages = process_rows(ctx, run_id, parsed)
    except ImportFailedError as exc:
        failure = exc
        summary = exc.summary

    status = "failed" if failure else "completed"
    run = db.query(models.ImportRun).filter(models.ImportRun.id == run_id).one()
    run.status = status
    run.summary_json = summary
    run.completed_at = datetime.utcnow()
    db.commit()
    db.refresh(run)

    log_audit(
        db,
        tenant_id=tenant_id,
        user_id=user_id,
        action=f"import.{mode}_completed",
        entity_type="import_run",
        entity_id=run_id,
        request_id=request_id,
        metadata={**base_metadata, "status": status, "summary": summary},
    )
    logger.info(
        "import finished import_run_id=%s mode=%s status=%s rows_total=%s rows_error=%s",
        run_id,
        mode,
        status,
        summary["rowsTotal"],
        summary["rowsError"],
    )

    if failure:
        raise ApiError(400, "import_failed", str(failure), {"importRunId": run_id})
    return ImportResult(run=run, summary=summary, messages=messages)


def load_run(db: Session, tenant_id: str, run_id: str) -> models.ImportRun:
    run = (
        db.query(models.ImportRun)
        .filter(models.ImportRun.id == run_id, models.ImportRun.tenant_id == tenant_id)
        .first()
    )
    if not run:
        raise not_found("import_run_not_found", "Import run not found")
    return run


def list_row_results(
    db: Session,
    tenant_id: str,
    run_id: str,
    severity: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[models.ImportRowResult]:
    query = db.query(models.ImportRowResult).filter(
        models.ImportRowResult.tenant_id == tenant_id,
        models.ImportRowResult.import_run_id == run_id,
    )
    if severity:
        query = query.filter(models.ImportRowResult.severity == severity)
    query = query.order_by(models.ImportRowResult.row_number, models.ImportRowResult.entity_type)
    if limit:
        query = query.limit(limit)
    return query.all()


def row_result_message(result: models.ImportRowResult) -> dict:
    return {
        "rowNumber": result.row_number,
        "severity": result.severity,
        "entityType": result.entity_type,
        "result": result.result,
        "idempotencyKey": result.idempotency_key,
        "field": result.field,
        "message": result.message,
        "rawValue": result.raw_value,
        "targetEntityId": result.target_entity_id,
    }


def stored_summary(run: models.ImportRun) -> dict:
    summary = empty_summary()
    stored = run.summary_json or {}
    for key, value in stored.items():
        if isinstance(value, dict) and isinstance(summary.get(key), dict):
            summary[key].update(value)
        elif key in summary:
            summary[key] = value
    return summary
