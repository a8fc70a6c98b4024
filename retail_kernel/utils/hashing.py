"""
Deterministic hashing utilities.

Used for the audit hash chain and for idempotency request fingerprints.
Every hash is computed over canonical JSON so the same logical payload
always yields the same digest.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """Serialize Decimal, date/datetime, UUID and bytes for canonical JSON."""
    if isinstance(obj, Decimal):
        # 10.00 and 10 must hash the same
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys sorted, no whitespace, Decimal/datetime/UUID rendered as strings.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Round-trip through canonical JSON so the value fits a JSON column."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict | list | None) -> str:
    """SHA-256 hex digest of the canonical JSON of ``payload``."""
    canonical = canonicalize_json(payload if payload is not None else {})
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_event(
    seq: int,
    event_name: str,
    subject_type: str,
    subject_id: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute the chained hash of an audit event.

    The previous event's hash is part of the input, so altering or removing
    any event changes every hash after it.
    """
    components = [
        str(seq),
        event_name,
        subject_type,
        str(subject_id),
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
