import re
import uuid
from datetime import date, datetime, timezone

from app.core.errors import ApiError

NIL_UUID = "00000000-0000-0000-0000-000000000000"


def parse_uuid(value: str, code: str, label: str) -> str:
    try:
        return str(uuid.UUID(value))
    except (ValueError, AttributeError, TypeError):
        raise ApiError(400, code, f"{label} id must be a valid UUID")


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.split()
    if not parts:
        return "Customer", "Record"
    if len(parts) == 1:
        return parts[0], "Record"
    return parts[0], " ".join(parts[1:])


def clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def iso_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%Y-%m-%d")


def iso_timestamp(value: datetime | None) -> str | None:
    """UTC timestamp with fractional seconds, e.g. ``2026-03-20T10:00:00.123456Z``."""
    if value is None:
        return None
    return value.replace(tzinfo=None).isoformat() + "Z"


def rfc3339_seconds(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_day(value: str) -> date:
    if not _DAY_RE.match(value):
        raise ValueError(f"not a YYYY-MM-DD date: {value!r}")
    return datetime.strptime(value, "%Y-%m-%d").date()


def short_place(city: str | None, state: str | None) -> str | None:
    city = (city or "").strip()
    state = (state or "").strip()
    if city and state:
        return f"{city}, {state}"
    return city or state or None
