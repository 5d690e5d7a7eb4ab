import hashlib
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

CANONICAL_FIELDS = (
    "customer_name",
    "email",
    "phone_primary",
    "phone_secondary",
    "estimate_number",
    "origin_zip",
    "destination_zip",
    "origin_city",
    "destination_city",
    "origin_state",
    "destination_state",
    "requested_pickup_date",
    "requested_pickup_time",
    "lead_source",
    "estimated_total",
    "deposit",
    "pricing_notes",
    "job_number",
    "scheduled_date",
    "pickup_time",
    "phase",
    "status",
    "job_type",
    "facility",
    "storage_status",
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
    "monthly_rate",
    "storage_balance",
    "move_balance",
)

ESTIMATE_TRIGGER_FIELDS = (
    "estimate_number",
    "origin_zip",
    "destination_zip",
    "requested_pickup_date",
    "requested_pickup_time",
    "estimated_total",
    "deposit",
)

STORAGE_TRIGGER_FIELDS = (
    "facility",
    "storage_status",
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
    "monthly_rate",
    "storage_balance",
    "move_balance",
)

IMPORT_SOURCES = ("granot", "generic")
SUPPORTED_CSV_CONTENT_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel"}

SEVERITY_INFO = "info"
SEVERITY_WARN = "warn"
SEVERITY_ERROR = "error"

MODE_DRY_RUN = "dry_run"
MODE_APPLY = "apply"

AMBIGUOUS_DATE_WARNING = "Ambiguous date interpreted as MM/DD/YYYY"

# (strptime format, month/day first)
_DATE_FORMATS = (
    ("%Y-%m-%d", False),
    ("%m/%d/%Y", True),
    ("%Y/%m/%d", False),
    ("%m-%d-%Y", True),
)
_DATE_SHAPE = re.compile(r"^(\d{4}[-/]\d{1,2}[-/]\d{1,2}|\d{1,2}[-/]\d{1,2}[-/]\d{4})$")
_INTEGER = re.compile(r"^[+-]?\d+$")

CanonicalRow = Dict[str, str]


def normalize_header_key(value: str) -> str:
    raw = value.strip()
    for ch in (" ", "_", "-", ".", "/"):
        raw = raw.replace(ch, "")
    return raw.lower()


def normalize_header_row(row: list[str]) -> list[str]:
    return [cell.strip().removeprefix("\ufeff") for cell in row]


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_phone(value: str) -> str:
    raw = value.strip()
    return "".join(ch for ch in raw if ch.isdigit())


def non_empty(value: str | None, fallback: str) -> str:
    trimmed = (value or "").strip()
    return trimmed or fallback


def optional_text(value: str | None) -> Optional[str]:
    trimmed = (value or "").strip()
    return trimmed or None


def truncate(value: str, limit: int) -> str:
    if limit <= 0:
        return ""
    return value[:limit]


def short_hash(value: str, size: int) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    if size <= 0 or size >= len(digest):
        return digest
    return digest[:size]


def parse_flexible_date(value: str | None) -> Tuple[Optional[date], str]:
    """Parse an import date.

    Returns ``(date, warning)``; both empty for a blank value. Raises
    ``ValueError`` when no accepted layout matches.
    """
    raw = (value or "").strip()
    if not raw:
        return None, ""
    if not _DATE_SHAPE.match(raw):
        raise ValueError("invalid date format")
    for fmt, month_first in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
        warning = ""
        if month_first:
            month, day = (int(part) for part in re.split(r"[/-]", raw)[:2])
            if 1 <= month <= 12 and 1 <= day <= 12:
                warning = AMBIGUOUS_DATE_WARNING
        return parsed, warning
    raise ValueError("invalid date format")


def parse_money_cents(value: str | None) -> Optional[int]:
    raw = (value or "").strip()
    if not raw:
        return None
    cleaned = raw.replace("$", "").replace(",", "").replace(" ", "")
    if "." in cleaned:
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            raise ValueError(f"invalid money value: {raw!r}")
        if not amount.is_finite():
            raise ValueError(f"invalid money value: {raw!r}")
        if amount < 0:
            return 0
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if not _INTEGER.match(cleaned):
        raise ValueError(f"invalid money value: {raw!r}")
    return max(int(cleaned), 0)


def parse_int_non_negative(value: str | None) -> int:
    raw = (value or "").strip()
    if not raw:
        return 0
    if not _INTEGER.match(raw):
        raise ValueError(f"invalid integer value: {raw!r}")
    return max(int(raw), 0)


def money_or_none(value: str | None) -> Optional[int]:
    """Lenient variant used for optional amounts: unparsable means absent."""
    try:
        return parse_money_cents(value)
    except ValueError:
        return None


def int_or_zero(value: str | None) -> int:
    try:
        return parse_int_non_negative(value)
    except ValueError:
        return 0


def date_or_none(value: str | None) -> Optional[date]:
    try:
        parsed, _ = parse_flexible_date(value)
    except ValueError:
        return None
    return parsed


def normalize_job_status(value: str | None) -> str:
    raw = (value or "").strip().lower()
    if raw in ("booked", "scheduled", "completed", "cancelled"):
        return raw
    if raw == "canceled":
        return "cancelled"
    return "booked"


def normalize_storage_status(value: str | None) -> str:
    raw = (value or "").strip().lower()
    if raw in ("sit", "out"):
        return raw
    return "in_storage"


def build_canonical_row(row: list[str], mapping: Dict[str, int]) -> CanonicalRow:
    canonical: CanonicalRow = {}
    for field in CANONICAL_FIELDS:
        idx = mapping.get(field)
        if idx is None or idx < 0 or idx >= len(row):
            canonical[field] = ""
        else:
            canonical[field] = row[idx].strip()
    return canonical


def has_estimate_fields(row: CanonicalRow) -> bool:
    return any(row.get(field) for field in ESTIMATE_TRIGGER_FIELDS)


def has_storage_fields(row: CanonicalRow) -> bool:
    return any(row.get(field) for field in STORAGE_TRIGGER_FIELDS)


def build_customer_key(customer_name: str, email: str, phone: str) -> str:
    if email:
        return "email:" + email
    if phone:
        return "phone:" + phone
    return "name:" + customer_name.strip().lower()


def build_estimate_key(row: CanonicalRow, customer_name: str, email: str, phone: str) -> str:
    estimate_number = row.get("estimate_number", "").strip()
    if estimate_number:
        return "estimate_number:" + estimate_number
    job_number = row.get("job_number", "").strip()
    if job_number:
        return "job_number:" + job_number
    base = "|".join(
        [
            build_customer_key(customer_name, email, phone),
            row.get("requested_pickup_date", "").strip(),
            row.get("origin_zip", "").strip(),
            row.get("destination_zip", "").strip(),
        ]
    )
    return "estimate_hash:" + short_hash(base, 20)


def build_job_key(row: CanonicalRow, customer_id: str) -> str:
    job_number = row.get("job_number", "").strip()
    if job_number:
        return "job_number:" + job_number
    base = "|".join(
        [
            customer_id,
            row.get("scheduled_date", "").strip(),
            row.get("requested_pickup_date", "").strip(),
            row.get("origin_zip", "").strip(),
            row.get("destination_zip", "").strip(),
        ]
    )
    return "job_hash:" + short_hash(base, 20)
