"""Map arbitrary raw payloads to the canonical event schema.

The normalizer is a pure function of (source, payload) and the current
field-mapping snapshot. It never raises: failures come back as a
NormalizationError value.
"""

from __future__ import annotations

import math
import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Any

import structlog
import yaml  # type: ignore[import-untyped]
from dateutil import parser as date_parser  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, field_validator

from eventintel.exceptions import InvalidEvent
from eventintel.ingest.hashing import canonical_json, normalized_event_hash

logger = structlog.get_logger()

CANONICAL_FIELDS = ("metric", "amount", "timestamp")
DEFAULT_CLIENT = "default"

# Later entries win when two raw fields map to the same canonical field.
DEFAULT_FIELD_MAPPINGS: dict[str, str] = {
    "metric": "metric",
    "amount": "amount",
    "timestamp": "timestamp",
    "value": "metric",
    "price": "amount",
    "date": "timestamp",
    "time": "timestamp",
}

_AMOUNT_STRIP = re.compile(r"[^0-9.+\-]")
_AMOUNT_PREFIX = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)")
_DATE_PREFIXES = (
    re.compile(r"^(\d{4})/(\d{2})/(\d{2})"),  # 2024/01/01
    re.compile(r"^(\d{4})-(\d{2})-(\d{2})"),  # 2024-01-01
    re.compile(r"^(\d{4})(\d{2})(\d{2})"),  # 20240101
)


def convert_amount(value: Any) -> float | None:
    """Coerce to float; strings keep only digits, sign and decimal point."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float | Decimal):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        match = _AMOUNT_PREFIX.match(_AMOUNT_STRIP.sub("", value))
        if not match:
            return None
        number = float(match.group(0))
        return number if math.isfinite(number) else None
    return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def convert_timestamp(value: Any) -> datetime | None:
    """Coerce to a UTC datetime.

    Strings try YYYY/MM/DD, YYYY-MM-DD and YYYYMMDD prefixes first (midnight
    UTC), then generic parsing.
    """
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if not isinstance(value, str):
        return None

    for pattern in _DATE_PREFIXES:
        match = pattern.match(value)
        if match:
            year, month, day = (int(part) for part in match.groups())
            try:
                return datetime(year, month, day, tzinfo=UTC)
            except ValueError:
                continue

    try:
        return _as_utc(date_parser.parse(value))
    except (ValueError, OverflowError):
        return None


def convert_metric(value: Any) -> str:
    """Stringify; a missing value becomes the empty string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict | list):
        try:
            return canonical_json(value)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


CONVERTERS: Mapping[str, Callable[[Any], Any]] = MappingProxyType(
    {
        "amount": convert_amount,
        "timestamp": convert_timestamp,
        "metric": convert_metric,
    }
)


def _validate_table(client_id: str, table: Mapping[str, str]) -> None:
    for raw_field, canonical_field in table.items():
        if canonical_field not in CANONICAL_FIELDS:
            raise ValueError(
                f"Mapping for client '{client_id}' targets unknown field '{canonical_field}' (raw field '{raw_field}')"
            )


@dataclass(frozen=True)
class FieldMappings:
    """Immutable snapshot of per-client field-mapping tables."""

    tables: Mapping[str, Mapping[str, str]]

    def __post_init__(self) -> None:
        frozen: dict[str, Mapping[str, str]] = {}
        for client_id, table in self.tables.items():
            _validate_table(client_id, table)
            frozen[client_id] = MappingProxyType(dict(table))
        if DEFAULT_CLIENT not in frozen:
            frozen[DEFAULT_CLIENT] = MappingProxyType(dict(DEFAULT_FIELD_MAPPINGS))
        object.__setattr__(self, "tables", MappingProxyType(frozen))

    @classmethod
    def default(cls) -> FieldMappings:
        return cls({DEFAULT_CLIENT: DEFAULT_FIELD_MAPPINGS})

    def table_for(self, client_id: str) -> Mapping[str, str]:
        return self.tables.get(client_id) or self.tables[DEFAULT_CLIENT]

    def with_client(self, client_id: str, mappings: Mapping[str, str]) -> FieldMappings:
        """Return a new snapshot where the client's table is the default table overlaid with `mappings`."""
        merged = {**self.tables[DEFAULT_CLIENT], **mappings}
        return FieldMappings({**self.tables, client_id: merged})


class FieldMappingsFile(BaseModel):
    """Schema of the field-mappings YAML file."""

    field_mappings: dict[str, dict[str, str]] = Field(default_factory=dict)

    @field_validator("field_mappings")
    @classmethod
    def _known_targets(cls, value: dict[str, dict[str, str]]) -> dict[str, dict[str, str]]:
        for client_id, table in value.items():
            _validate_table(client_id, table)
        return value


def load_field_mappings(path: str) -> FieldMappings:
    """Load mapping tables from YAML; missing file falls back to the default table."""
    p = Path(path)
    if not p.exists():
        logger.warning("Field mappings file not found, using defaults", path=path)
        return FieldMappings.default()
    parsed = FieldMappingsFile.model_validate(yaml.safe_load(p.read_text()) or {})
    return FieldMappings(parsed.field_mappings)


@dataclass(frozen=True)
class NormalizedRecord:
    client_id: str
    metric: str | None
    amount: float | None
    timestamp: datetime | None
    normalized_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "metric": self.metric,
            "amount": self.amount,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "normalizedHash": self.normalized_hash,
        }


@dataclass(frozen=True)
class NormalizationError:
    error: str
    reason: str = "validation_error"


def validate_raw_input(source: Any, payload: Any) -> None:
    """Raise InvalidEvent unless source is a non-empty string and payload a JSON-encodable mapping."""
    if not isinstance(source, str) or not source:
        raise InvalidEvent()
    if not isinstance(payload, Mapping):
        raise InvalidEvent()
    try:
        canonical_json(payload)
    except (TypeError, ValueError) as e:
        raise InvalidEvent(f"Invalid event: payload is not JSON-encodable ({e})") from e


class Normalizer:
    """Convert unreliable raw events into the canonical format."""

    def __init__(self, mappings: FieldMappings | None = None):
        self._mappings = mappings or FieldMappings.default()
        self._write_lock = threading.Lock()

    @property
    def mappings(self) -> FieldMappings:
        return self._mappings

    def update_field_mappings(self, client_id: str, mappings: Mapping[str, str]) -> FieldMappings:
        """Publish a new snapshot with an updated table for one client."""
        with self._write_lock:
            snapshot = self._mappings.with_client(client_id, mappings)
            self._mappings = snapshot
        logger.info("Field mappings updated", client_id=client_id, fields=sorted(mappings))
        return snapshot

    def normalize(self, source: Any, payload: Any) -> NormalizedRecord | NormalizationError:
        try:
            validate_raw_input(source, payload)
        except InvalidEvent as e:
            return NormalizationError(error=str(e), reason=e.reason)

        # Read the snapshot once so a concurrent update can't mix tables.
        table = self._mappings.table_for(source)

        try:
            values: dict[str, Any] = {}
            for raw_field, canonical_field in table.items():
                if raw_field in payload:
                    values[canonical_field] = CONVERTERS[canonical_field](payload[raw_field])

            metric = values.get("metric")
            amount = values.get("amount")
            return NormalizedRecord(
                client_id=source,
                metric=metric,
                amount=amount,
                timestamp=values.get("timestamp"),
                normalized_hash=normalized_event_hash(source, metric, amount),
            )
        except Exception as e:
            logger.warning("Normalization failed", source=source, error=str(e))
            return NormalizationError(error=f"Normalization error: {e}")


def build_normalizer(field_mappings_path: str | None = None) -> Normalizer:
    if field_mappings_path:
        return Normalizer(load_field_mappings(field_mappings_path))
    return Normalizer()
