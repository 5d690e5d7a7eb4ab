import hashlib
import json
from typing import Any

IDEMPOTENCY_HEADER = "Idempotency-Key"


def payload_hash(payload: dict[str, Any]) -> str:
    """Hex SHA-256 of the compact JSON form, keys kept in insertion order."""
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def read_idempotency_key(value: str | None) -> str:
    return (value or "").strip()
