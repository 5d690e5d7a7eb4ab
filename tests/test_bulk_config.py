from datetime import date

import pytest

from app.bulk.config import (
    AMBIGUOUS_DATE_WARNING,
    build_canonical_row,
    build_customer_key,
    build_estimate_key,
    build_job_key,
    has_estimate_fields,
    has_storage_fields,
    normalize_header_key,
    normalize_job_status,
    normalize_phone,
    normalize_storage_status,
    parse_flexible_date,
    parse_int_non_negative,
    parse_money_cents,
)
from app.bulk.parser import MappingError, parse_import_file, resolve_column_mapping
from app.core.errors import ApiError


def test_normalize_header_key_strips_separators():
    assert normalize_header_key(" Origin Zip ") == "originzip"
    assert normalize_header_key("phone-primary/2.x") == "phoneprimary2x"


def test_normalize_phone_keeps_digits():
    assert normalize_phone("(512) 555-0100 ") == "5125550100"
    assert normalize_phone("n/a") == ""


@pytest.mark.parametrize(
    "raw,expected,warning",
    [
        ("2026-03-22", date(2026, 3, 22), ""),
        ("2026/3/2", date(2026, 3, 2), ""),
        ("03/22/2026", date(2026, 3, 22), ""),
        ("03/04/2026", date(2026, 3, 4), AMBIGUOUS_DATE_WARNING),
        ("12-01-2026", date(2026, 12, 1), AMBIGUOUS_DATE_WARNING),
        ("  ", None, ""),
    ],
)
def test_parse_flexible_date(raw, expected, warning):
    assert parse_flexible_date(raw) == (expected, warning)


@pytest.mark.parametrize("raw", ["22/03/2026", "March 3 2026", "2026-13-01", "20260322"])
def test_parse_flexible_date_rejects(raw):
    with pytest.raises(ValueError):
        parse_flexible_date(raw)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("$1,234.565", 123457),
        ("12.5", 1250),
        ("2500", 2500),
        ("-3.00", 0),
        ("-7", 0),
        ("", None),
    ],
)
def test_parse_money_cents(raw, expected):
    assert parse_money_cents(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "1.2.3", "NaN.0", "12a"])
def test_parse_money_cents_rejects(raw):
    with pytest.raises(ValueError):
        parse_money_cents(raw)


def test_parse_int_non_negative():
    assert parse_int_non_negative(" 7 ") == 7
    assert parse_int_non_negative("-4") == 0
    assert parse_int_non_negative("") == 0
    with pytest.raises(ValueError):
        parse_int_non_negative("4.5")


def test_status_normalizers():
    assert normalize_job_status("Canceled") == "cancelled"
    assert normalize_job_status("COMPLETED") == "completed"
    assert normalize_job_status("lost") == "booked"
    assert normalize_storage_status("SIT") == "sit"
    assert normalize_storage_status("") == "in_storage"


def test_canonical_row_and_entity_triggers():
    row = build_canonical_row([" Jane ", "78701", ""], {"customer_name": 0, "origin_zip": 1, "facility": 9})
    assert row["customer_name"] == "Jane"
    assert row["facility"] == ""
    assert row["email"] == ""
    assert has_estimate_fields(row)
    assert not has_storage_fields(row)


def test_idempotency_keys_prefer_stable_identifiers():
    assert build_customer_key("Jane", "jane@example.com", "5125550100") == "email:jane@example.com"
    assert build_customer_key("Jane", "", "5125550100") == "phone:5125550100"
    assert build_customer_key(" Jane DOE ", "", "") == "name:jane doe"

    row = build_canonical_row(["E-1", "J-1"], {"estimate_number": 0, "job_number": 1})
    assert build_estimate_key(row, "Jane", "jane@example.com", "") == "estimate_number:E-1"
    assert build_job_key(row, "cust") == "job_number:J-1"

    bare = build_canonical_row(["78701", "75001", "2026-03-22"], {
        "origin_zip": 0,
        "destination_zip": 1,
        "requested_pickup_date": 2,
    })
    estimate_key = build_estimate_key(bare, "Jane", "jane@example.com", "")
    assert estimate_key.startswith("estimate_hash:")
    assert len(estimate_key) == len("estimate_hash:") + 20
    assert estimate_key == build_estimate_key(bare, "Someone", "jane@example.com", "")
    assert build_job_key(bare, "a") != build_job_key(bare, "b")


def test_resolve_column_mapping_by_header_and_index():
    headers = ["Customer Name", "E-mail", "Origin ZIP"]
    mapping = resolve_column_mapping(
        {"customer_name": "customer_name", "email": "email", "origin_zip": 2, "deposit": " "},
        headers,
        True,
    )
    assert mapping == {"customer_name": 0, "email": 1, "origin_zip": 2}

    assert resolve_column_mapping({"email": "1"}, [], False) == {"email": 1}
    with pytest.raises(MappingError):
        resolve_column_mapping({"email": "email"}, [], False)
    with pytest.raises(MappingError):
        resolve_column_mapping({"email": -1}, headers, True)
    with pytest.raises(MappingError):
        resolve_column_mapping({"email": True}, headers, True)


def test_parse_import_file_enforces_row_limit():
    data = b"email\na@x.com\nb@x.com\nc@x.com\n"
    options = '{"source": "generic", "mapping": {"email": "email"}}'
    with pytest.raises(ApiError) as excinfo:
        parse_import_file(filename="a.csv", content_type="text/csv", data=data, options_raw=options, max_rows=2)
    assert excinfo.value.code == "row_limit_exceeded"
    assert excinfo.value.details == {"maxRows": 2}

    parsed = parse_import_file(
        filename="a.csv",
        content_type="text/csv",
        data=b"\xef\xbb\xbfemail\na@x.com\n",
        options_raw=options,
        max_rows=2,
    )
    assert parsed.headers == ["email"]
    assert parsed.rows == [["a@x.com"]]
    assert parsed.first_row_number() == 2


def test_parse_import_file_rejects_bad_input():
    options = '{"source": "granot", "mapping": {"email": 0}}'
    with pytest.raises(ApiError) as excinfo:
        parse_import_file(filename="a.csv", content_type="text/csv", data=b"", options_raw=options, max_rows=10)
    assert excinfo.value.code == "empty_file"

    with pytest.raises(ApiError) as excinfo:
        parse_import_file(filename="a.txt", content_type="text/plain", data=b"x", options_raw=options, max_rows=10)
    assert excinfo.value.code == "invalid_file_type"

    with pytest.raises(ApiError) as excinfo:
        parse_import_file(
            filename="a.csv",
            content_type="text/csv",
            data=b"x",
            options_raw='{"source": "other", "mapping": {"email": 0}}',
            max_rows=10,
        )
    assert excinfo.value.code == "validation_error"
