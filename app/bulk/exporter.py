import csv
import io
from typing import Callable, Dict, Iterable, Iterator, List, Tuple

from sqlalchemy.orm import Session

from app.db import models
from app.services.formatting import iso_date, rfc3339_seconds

EXPORT_BATCH_SIZE = 500

CUSTOMER_HEADER = ["id", "first_name", "last_name", "email", "phone", "created_at", "updated_at"]
ESTIMATE_HEADER = [
    "id",
    "estimate_number",
    "customer_name",
    "email",
    "primary_phone",
    "secondary_phone",
    "status",
    "origin_city",
    "origin_state",
    "origin_postal_code",
    "destination_city",
    "destination_state",
    "destination_postal_code",
    "move_date",
    "pickup_time",
    "lead_source",
    "estimated_total_cents",
    "deposit_cents",
    "notes",
    "created_at",
    "updated_at",
]
JOB_HEADER = [
    "id",
    "job_number",
    "status",
    "scheduled_date",
    "pickup_time",
    "customer_name",
    "customer_email",
    "customer_phone",
    "estimate_number",
    "origin_city",
    "origin_state",
    "origin_postal_code",
    "destination_city",
    "destination_state",
    "destination_postal_code",
    "created_at",
    "updated_at",
]
STORAGE_HEADER = [
    "id",
    "job_number",
    "facility",
    "status",
    "date_in",
    "date_out",
    "next_bill_date",
    "lot_number",
    "location_label",
    "vaults",
    "pads",
    "items",
    "oversize_items",
    "volume",
    "monthly_rate_cents",
    "storage_balance_cents",
    "move_balance_cents",
    "notes",
    "created_at",
    "updated_at",
]


def _text(value) -> str:
    return "" if value is None else str(value)


def _customer_rows(db: Session, tenant_id: str) -> Iterable[List[str]]:
    customers = (
        db.query(models.Customer)
        .filter(models.Customer.tenant_id == tenant_id)
        .order_by(models.Customer.created_at, models.Customer.id)
        .yield_per(EXPORT_BATCH_SIZE)
    )
    for customer in customers:
        yield [
            customer.id,
            customer.first_name,
            customer.last_name,
            _text(customer.email),
            _text(customer.phone),
            rfc3339_seconds(customer.created_at),
            rfc3339_seconds(customer.updated_at),
        ]


def _estimate_rows(db: Session, tenant_id: str) -> Iterable[List[str]]:
    estimates = (
        db.query(models.Estimate)
        .filter(models.Estimate.tenant_id == tenant_id)
        .order_by(models.Estimate.created_at, models.Estimate.id)
        .yield_per(EXPORT_BATCH_SIZE)
    )
    for estimate in estimates:
        yield [
            estimate.id,
            estimate.estimate_number,
            estimate.customer_name,
            estimate.email,
            estimate.primary_phone,
            _text(estimate.secondary_phone),
            estimate.status,
            estimate.origin_city,
            estimate.origin_state,
            estimate.origin_postal_code,
            estimate.destination_city,
            estimate.destination_state,
            estimate.destination_postal_code,
            _text(iso_date(estimate.move_date)),
            _text(estimate.pickup_time),
            estimate.lead_source,
            _text(estimate.estimated_total_cents),
            _text(estimate.deposit_cents),
            _text(estimate.notes),
            rfc3339_seconds(estimate.created_at),
            rfc3339_seconds(estimate.updated_at),
        ]


def _job_rows(db: Session, tenant_id: str) -> Iterable[List[str]]:
    rows = (
        db.query(models.Job, models.Customer, models.Estimate)
        .join(
            models.Customer,
            (models.Customer.id == models.Job.customer_id) & (models.Customer.tenant_id == models.Job.tenant_id),
        )
        .outerjoin(
            models.Estimate,
            (models.Estimate.id == models.Job.estimate_id) & (models.Estimate.tenant_id == models.Job.tenant_id),
        )
        .filter(models.Job.tenant_id == tenant_id)
        .order_by(models.Job.created_at, models.Job.id)
        .yield_per(EXPORT_BATCH_SIZE)
    )
    for job, customer, estimate in rows:
        customer_name = f"{customer.first_name} {customer.last_name}".strip() or "Customer"
        yield [
            job.id,
            job.job_number,
            job.status,
            _text(iso_date(job.scheduled_date)),
            _text(job.pickup_time),
            customer_name,
            _text(customer.email),
            _text(customer.phone),
            _text(estimate.estimate_number if estimate else None),
            _text(estimate.origin_city if estimate else None),
            _text(estimate.origin_state if estimate else None),
            _text(estimate.origin_postal_code if estimate else None),
            _text(estimate.destination_city if estimate else None),
            _text(estimate.destination_state if estimate else None),
            _text(estimate.destination_postal_code if estimate else None),
            rfc3339_seconds(job.created_at),
            rfc3339_seconds(job.updated_at),
        ]


def _storage_rows(db: Session, tenant_id: str) -> Iterable[List[str]]:
    rows = (
        db.query(models.StorageRecord, models.Job)
        .join(
            models.Job,
            (models.Job.id == models.StorageRecord.job_id) & (models.Job.tenant_id == models.StorageRecord.tenant_id),
        )
        .filter(models.StorageRecord.tenant_id == tenant_id)
        .order_by(models.StorageRecord.created_at, models.StorageRecord.id)
        .yield_per(EXPORT_BATCH_SIZE)
    )
    for record, job in rows:
        yield [
            record.id,
            job.job_number,
            record.facility,
            record.status,
            _text(iso_date(record.date_in)),
            _text(iso_date(record.date_out)),
            _text(iso_date(record.next_bill_date)),
            _text(record.lot_number),
            _text(record.location_label),
            str(record.vaults or 0),
            str(record.pads or 0),
            str(record.items or 0),
            str(record.oversize_items or 0),
            str(record.volume or 0),
            _text(record.monthly_rate_cents),
            str(record.storage_balance_cents or 0),
            str(record.move_balance_cents or 0),
            _text(record.notes),
            rfc3339_seconds(record.created_at),
            rfc3339_seconds(record.updated_at),
        ]


RowSource = Callable[[Session, str], Iterable[List[str]]]

EXPORTS: Dict[str, Tuple[List[str], RowSource]] = {
    "customers": (CUSTOMER_HEADER, _customer_rows),
    "estimates": (ESTIMATE_HEADER, _estimate_rows),
    "jobs": (JOB_HEADER, _job_rows),
    "storage": (STORAGE_HEADER, _storage_rows),
}


def write_csv(header: List[str], rows: Iterable[List[str]]) -> str:
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return out.getvalue()


def iter_csv(header: List[str], rows: Iterable[List[str]]) -> Iterator[str]:
    """Yield the header line, then one CSV line per row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    yield buffer.getvalue()
    for row in rows:
        buffer.seek(0)
        buffer.truncate(0)
        writer.writerow(row)
        yield buffer.getvalue()


def stream_export(db: Session, tenant_id: str, entity: str) -> Tuple[Iterator[str], str]:
    """Lazy CSV for the tenant's ``entity`` table. Returns ``(lines, filename)``.

    Rows are fetched in batches of ``EXPORT_BATCH_SIZE`` as the lines are consumed.
    """
    header, source = EXPORTS[entity]
    return iter_csv(header, source(db, tenant_id)), f"{entity}.csv"


ERRORS_HEADER = [
    "row_number",
    "severity",
    "entity_type",
    "result",
    "field",
    "message",
    "raw_value",
    "idempotency_key",
    "target_entity_id",
]


def build_errors_csv(results: Iterable[models.ImportRowResult]) -> str:
    rows = (
        [
            str(result.row_number),
            result.severity,
            result.entity_type,
            result.result,
            _text(result.field),
            result.message,
            _text(result.raw_value),
            result.idempotency_key,
            _text(result.target_entity_id),
        ]
        for result in results
        if result.severity in ("error", "warn")
    )
    return write_csv(ERRORS_HEADER, rows)
