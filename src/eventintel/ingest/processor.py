"""Idempotent event processing.

Each call owns exactly one unit of work: raw admission, normalization,
normalized admission and status transition either commit together or
roll back together. Every failure becomes a ProcessingOutcome; nothing
is raised to the caller.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from uuid import UUID

import structlog

from eventintel.config import settings
from eventintel.exceptions import (
    InvalidEvent,
    ProcessingError,
    SimulatedFailure,
    UniqueConstraintViolation,
    UnitOfWorkTimeout,
)
from eventintel.ingest.hashing import raw_event_hash
from eventintel.ingest.normalize import (
    NormalizationError,
    NormalizedRecord,
    Normalizer,
    build_normalizer,
    validate_raw_input,
)
from eventintel.ingest.store import EventStore, SqlEventStore, UnitOfWork
from eventintel.models import NormalizedEvent, RawEvent, RawEventStatus

logger = structlog.get_logger()

ADMISSION_STATUSES = {RawEventStatus.NORMALIZED.value, RawEventStatus.PROCESSING.value}


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    VALIDATION_ERROR = "validation_error"
    PROCESSING_ERROR = "processing_error"


@dataclass(frozen=True)
class ProcessingOutcome:
    kind: OutcomeKind
    reason: str
    message: str
    raw_event_id: UUID | None = None
    normalized_event_id: UUID | None = None
    normalized_data: NormalizedRecord | None = None
    duplicate_level: str | None = None  # "raw" or "normalized"
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "reason": self.reason,
            "message": self.message,
            "rawEventId": str(self.raw_event_id) if self.raw_event_id else None,
            "normalizedEventId": str(self.normalized_event_id) if self.normalized_event_id else None,
        }
        if self.normalized_data is not None:
            result["normalizedData"] = self.normalized_data.to_dict()
        if self.duplicate_level:
            result["duplicateLevel"] = self.duplicate_level
        if self.error:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class StatisticsSnapshot:
    total_processed: int
    total_failed: int
    total_duplicates: int
    total_normalized: int

    def to_dict(self) -> dict[str, int]:
        return {
            "totalProcessed": self.total_processed,
            "totalFailed": self.total_failed,
            "totalDuplicates": self.total_duplicates,
            "totalNormalized": self.total_normalized,
        }


def _duplicate(
    raw_event_id: UUID, normalized_event_id: UUID | None, level: str, message: str
) -> ProcessingOutcome:
    return ProcessingOutcome(
        kind=OutcomeKind.DUPLICATE,
        reason=OutcomeKind.DUPLICATE.value,
        message=message,
        raw_event_id=raw_event_id,
        normalized_event_id=normalized_event_id,
        duplicate_level=level,
    )


class EventProcessor:
    """Turn normalization into an exactly-once durable side effect."""

    def __init__(
        self,
        store: EventStore | None = None,
        normalizer: Normalizer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store or SqlEventStore()
        self.normalizer = normalizer or build_normalizer(settings.field_mappings_path)
        self._clock = clock

    def process_event(
        self,
        raw_input: Mapping[str, Any],
        simulate_failure: bool = False,
        deadline_seconds: float | None = None,
    ) -> ProcessingOutcome:
        """Process one raw event.

        Args:
            raw_input: {"source": str, "payload": mapping}
            simulate_failure: Raise a synthetic fault just before the commit point.
            deadline_seconds: Treat the unit of work as failed if it runs longer.

        Returns:
            ProcessingOutcome (success | duplicate | validation_error | processing_error)
        """
        if not isinstance(raw_input, Mapping):
            raw_input = {}
        source = raw_input.get("source")
        payload = raw_input.get("payload")

        try:
            validate_raw_input(source, payload)
        except InvalidEvent as e:
            logger.warning("Rejected invalid event", source=source, error=str(e))
            return ProcessingOutcome(
                kind=OutcomeKind.VALIDATION_ERROR,
                reason=e.reason,
                message=str(e),
            )

        started = self._clock()
        raw_hash: str | None = None
        unit: UnitOfWork | None = None

        try:
            raw_hash = raw_event_hash(source, payload)
            unit = self.store.begin_unit()

            # 1. Exact raw replay
            existing_raw = unit.find_raw_event_by_hash(raw_hash, ADMISSION_STATUSES)
            if existing_raw is not None and existing_raw.status == RawEventStatus.NORMALIZED:
                existing_raw_id = existing_raw.id
                self.store.rollback(unit)
                logger.info("Duplicate raw event", raw_event_id=str(existing_raw_id), source=source)
                return _duplicate(existing_raw_id, None, "raw", "Event already processed")

            # 2. Get-or-create the raw record (first writer wins on content)
            raw_event = unit.upsert_raw_event_if_absent(raw_hash, source, payload, RawEventStatus.PROCESSING.value)
            raw_event_id = raw_event.id

            # 3. Normalize
            normalized = self.normalizer.normalize(source, payload)
            if isinstance(normalized, NormalizationError):
                unit.update_raw_event_status(raw_event_id, RawEventStatus.FAILED.value, normalized.error)
                self.store.commit(unit)
                logger.warning("Normalization failed", raw_event_id=str(raw_event_id), error=normalized.error)
                return ProcessingOutcome(
                    kind=OutcomeKind.VALIDATION_ERROR,
                    reason=normalized.reason,
                    message=normalized.error,
                    raw_event_id=raw_event_id,
                )

            # 4. Semantic duplicate
            existing_normalized = unit.find_normalized_event_by_hash(normalized.normalized_hash)
            if existing_normalized is not None:
                return self._record_duplicate(unit, raw_event, existing_normalized)

            # 5. Fault injection and deadline, both before the commit point
            if simulate_failure:
                raise SimulatedFailure()
            self._check_deadline(started, deadline_seconds)

            # 6. Insert canonical record; a lost race surfaces as a unique violation
            try:
                normalized_event = unit.insert_normalized_event(normalized, raw_event_id)
            except UniqueConstraintViolation:
                winner = unit.find_normalized_event_by_hash(normalized.normalized_hash)
                if winner is None:
                    raise ProcessingError("Unique conflict on normalized hash but no existing record found")
                logger.info("Lost normalized insert race", raw_event_id=str(raw_event_id))
                return self._record_duplicate(unit, raw_event, winner)

            normalized_event_id = normalized_event.id
            unit.update_raw_event_status(raw_event_id, RawEventStatus.NORMALIZED.value)
            self._check_deadline(started, deadline_seconds)
            self.store.commit(unit)

            logger.info(
                "Event normalized",
                raw_event_id=str(raw_event_id),
                normalized_event_id=str(normalized_event_id),
                client_id=normalized.client_id,
            )
            return ProcessingOutcome(
                kind=OutcomeKind.SUCCESS,
                reason=OutcomeKind.SUCCESS.value,
                message="Event processed successfully",
                raw_event_id=raw_event_id,
                normalized_event_id=normalized_event_id,
                normalized_data=normalized,
            )

        except Exception as e:
            logger.error("Event processing failed, rolling back", source=source, error=str(e))
            if unit is not None:
                self._safe_rollback(unit)
            if raw_hash is not None:
                self._mark_failed(raw_hash, source, payload, str(e))
            return ProcessingOutcome(
                kind=OutcomeKind.PROCESSING_ERROR,
                reason=OutcomeKind.PROCESSING_ERROR.value,
                message=str(e),
                error=repr(e),
            )

    def _record_duplicate(
        self, unit: UnitOfWork, raw_event: RawEvent, existing: NormalizedEvent
    ) -> ProcessingOutcome:
        raw_event_id = raw_event.id
        existing_id = existing.id

        # The canonical record came from this very raw event: a concurrent replay.
        if existing.raw_event_id == raw_event_id:
            self.store.rollback(unit)
            logger.info("Duplicate raw event", raw_event_id=str(raw_event_id))
            return _duplicate(raw_event_id, existing_id, "raw", "Event already processed")

        unit.update_raw_event_status(raw_event_id, RawEventStatus.DUPLICATE.value)
        self.store.commit(unit)
        logger.info(
            "Duplicate normalized event",
            raw_event_id=str(raw_event_id),
            normalized_event_id=str(existing_id),
        )
        return _duplicate(raw_event_id, existing_id, "normalized", "Normalized event already exists")

    def _check_deadline(self, started: float, deadline_seconds: float | None) -> None:
        if deadline_seconds is None:
            return
        elapsed = self._clock() - started
        if elapsed > deadline_seconds:
            raise UnitOfWorkTimeout(elapsed, deadline_seconds)

    def _safe_rollback(self, unit: UnitOfWork) -> None:
        try:
            self.store.rollback(unit)
        except Exception as e:
            logger.error("Rollback failed", error=str(e))

    def _mark_failed(self, raw_hash: str, source: str, payload: Any, message: str) -> None:
        """Best-effort status write outside the rolled-back unit of work.

        Recreates the raw record if the rollback discarded it, so the payload
        survives. Its own failure is logged, not raised.
        """
        unit: UnitOfWork | None = None
        try:
            unit = self.store.begin_unit()
            raw_event = unit.upsert_raw_event_if_absent(raw_hash, source, payload, RawEventStatus.FAILED.value)
            if raw_event.status != RawEventStatus.NORMALIZED:
                unit.update_raw_event_status(raw_event.id, RawEventStatus.FAILED.value, message)
            self.store.commit(unit)
        except Exception as e:
            logger.error("Failed to update raw event status", content_hash=raw_hash, error=str(e))
            if unit is not None:
                self._safe_rollback(unit)

    def get_statistics(self) -> StatisticsSnapshot:
        """Point-in-time counts; read committed, no stronger guarantee."""
        return StatisticsSnapshot(
            total_processed=self.store.count_raw_events_by_status(RawEventStatus.NORMALIZED.value),
            total_failed=self.store.count_raw_events_by_status(RawEventStatus.FAILED.value),
            total_duplicates=self.store.count_raw_events_by_status(RawEventStatus.DUPLICATE.value),
            total_normalized=self.store.count_normalized_events(),
        )
