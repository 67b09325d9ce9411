"""Deterministic content fingerprints for raw and canonical events."""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, set | frozenset):
        return sorted(value, key=lambda item: canonical_json(item))
    raise TypeError(f"Cannot fingerprint value of type {type(value).__name__}")


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no whitespace so key order never matters."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=_encode_default,
    )


def fingerprint(value: Any) -> str:
    """SHA-256 hex digest of the canonical encoding.

    Collisions are treated as "same event".
    """
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def raw_event_hash(source: str, payload: Any) -> str:
    return fingerprint({"source": source, "payload": payload})


def normalized_event_hash(client_id: str, metric: str | None, amount: float | None) -> str:
    """Fingerprint canonical content; timestamp is excluded on purpose."""
    return fingerprint({"client_id": client_id, "metric": metric, "amount": amount})


def json_document(value: Any) -> Any:
    """Plain JSON types for storage, encoded exactly as the fingerprint sees them."""
    return json.loads(canonical_json(value))
