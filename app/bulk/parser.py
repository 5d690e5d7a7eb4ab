import csv
import hashlib
import io
import json
import math
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List

from app.bulk.config import (
    IMPORT_SOURCES,
    SUPPORTED_CSV_CONTENT_TYPES,
    normalize_header_key,
    normalize_header_row,
)
from app.core.errors import bad_request, validation_error


_INDEX = re.compile(r"^[+-]?[0-9]+$")


class MappingError(ValueError):
    pass


@dataclass
class ParsedImport:
    filename: str
    file_sha256: str
    source: str
    has_header: bool
    raw_mapping: dict
    mapping: Dict[str, int]
    headers: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)

    def first_row_number(self) -> int:
        return 2 if self.has_header else 1

    def mapping_json(self) -> dict:
        return {"source": self.source, "hasHeader": self.has_header, "mapping": self.raw_mapping}


def parse_options(raw: str | None) -> dict:
    options_raw = (raw or "").strip()
    if not options_raw:
        raise bad_request("missing_options", "options is required")
    try:
        options = json.loads(options_raw)
    except ValueError:
        raise bad_request("invalid_options", "options must be valid JSON")
    if not isinstance(options, dict):
        raise bad_request("invalid_options", "options must be valid JSON")
    if options.get("source") not in IMPORT_SOURCES:
        raise validation_error("options.source must be granot or generic")
    mapping = options.get("mapping")
    if not isinstance(mapping, dict) or not mapping:
        raise validation_error("options.mapping is required")
    has_header = options.get("hasHeader")
    if has_header is not None and not isinstance(has_header, bool):
        raise validation_error("options.hasHeader must be a boolean")
    return options


def check_file_type(filename: str, content_type: str | None) -> None:
    ext = os.path.splitext(filename or "")[1].lower()
    part_type = (content_type or "").strip().lower()
    if ext == ".csv":
        if part_type and part_type not in SUPPORTED_CSV_CONTENT_TYPES:
            raise bad_request(
                "invalid_content_type",
                "Unsupported CSV content type",
                {"contentType": part_type},
            )
        return
    if ext == ".xlsx":
        raise bad_request(
            "XLSX_NOT_SUPPORTED",
            "XLSX import is not supported in this phase. Please export and upload CSV.",
        )
    raise bad_request("invalid_file_type", "Only .csv uploads are supported")


def read_csv_rows(data: bytes) -> List[List[str]]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        raise bad_request("invalid_csv", "CSV parsing failed")
    reader = csv.reader(io.StringIO(text, newline=""), skipinitialspace=True, strict=True)
    rows = []
    try:
        for record in reader:
            if not record:
                continue
            rows.append(record)
    except csv.Error:
        raise bad_request("invalid_csv", "CSV parsing failed")
    return rows


def _index(canonical_field: str, value: int) -> int:
    if value < 0:
        raise MappingError(f"mapping for {canonical_field} has negative index")
    return value


def resolve_column_mapping(mapping: dict, headers: List[str], has_header: bool) -> Dict[str, int]:
    """Turn ``{canonical_field: header name or column index}`` into column indexes.

    Header names are matched with ``normalize_header_key`` on both sides.
    Without a header row only indexes are accepted.
    """
    resolved: Dict[str, int] = {}
    normalized = {normalize_header_key(header): idx for idx, header in enumerate(headers)}

    for canonical_field, value in mapping.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise MappingError(f"mapping for {canonical_field} must be string or integer")
        if isinstance(value, (int, float)):
            if isinstance(value, float) and not math.isfinite(value):
                raise MappingError(f"mapping for {canonical_field} must be string or integer")
            resolved[canonical_field] = _index(canonical_field, int(value))
            continue

        trimmed = value.strip()
        if not trimmed:
            continue
        if has_header:
            idx = normalized.get(normalize_header_key(trimmed))
            if idx is not None:
                resolved[canonical_field] = idx
                continue
        if _INDEX.match(trimmed):
            resolved[canonical_field] = _index(canonical_field, int(trimmed))
            continue
        if not has_header:
            raise MappingError(f"mapping for {canonical_field} must use column index when hasHeader=false")
        raise MappingError(f'column "{trimmed}" mapped to {canonical_field} was not found in header')

    return resolved


def parse_import_file(
    *,
    filename: str,
    content_type: str | None,
    data: bytes,
    options_raw: str | None,
    max_rows: int,
) -> ParsedImport:
    options = parse_options(options_raw)
    has_header = options.get("hasHeader")
    if has_header is None:
        has_header = True

    check_file_type(filename, content_type)
    file_sha256 = hashlib.sha256(data).hexdigest()

    rows = read_csv_rows(data)
    if not rows:
        raise bad_request("empty_file", "Uploaded CSV is empty")

    headers: List[str] = []
    data_rows = rows
    if has_header:
        headers = normalize_header_row(rows[0])
        data_rows = rows[1:]

    if max_rows > 0 and len(data_rows) > max_rows:
        raise bad_request("row_limit_exceeded", "CSV row limit exceeded", {"maxRows": max_rows})

    try:
        mapping = resolve_column_mapping(options["mapping"], headers, has_header)
    except MappingError as exc:
        raise bad_request("invalid_mapping", str(exc))

    return ParsedImport(
        filename=filename,
        file_sha256=file_sha256,
        source=options["source"],
        has_header=has_header,
        raw_mapping=options["mapping"],
        mapping=mapping,
        headers=headers,
        rows=data_rows,
    )
