"""Reconciliation sweep for raw events stuck in "processing"."""

from datetime import UTC, datetime, timedelta

import structlog

from eventintel.config import settings
from eventintel.db import acquire_advisory_lock, get_db, release_advisory_lock
from eventintel.models import RawEvent, RawEventStatus

logger = structlog.get_logger()

STALLED_MESSAGE = "Processing stalled; marked failed by reconciliation"
LOCK_NAME = "eventintel_reconcile"


def reconcile_stale_processing(
    older_than_minutes: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Promote stale "processing" raw events to "failed".

    A raw event stays in "processing" only if the best-effort recovery write
    after a rollback also failed. Failed events remain eligible for retry.

    Returns:
        dict with counts: {scanned, promoted, skipped_locked}
    """
    minutes = settings.stale_processing_minutes if older_than_minutes is None else older_than_minutes
    cutoff = (now or datetime.now(UTC)) - timedelta(minutes=minutes)
    stats = {"scanned": 0, "promoted": 0, "skipped_locked": 0}

    with get_db() as session:
        if not acquire_advisory_lock(session, LOCK_NAME):
            logger.info("Another reconciliation in progress, exiting")
            stats["skipped_locked"] = 1
            return stats

        try:
            stale = (
                session.query(RawEvent)
                .filter(
                    RawEvent.status == RawEventStatus.PROCESSING.value,
                    RawEvent.updated_at < cutoff,
                )
                .with_for_update(skip_locked=True)
                .all()
            )
            stats["scanned"] = len(stale)

            for raw_event in stale:
                raw_event.status = RawEventStatus.FAILED.value
                raw_event.error_message = STALLED_MESSAGE
                raw_event.updated_at = datetime.now(UTC)
                stats["promoted"] += 1

            session.flush()
        finally:
            release_advisory_lock(session, LOCK_NAME)

    logger.info("Reconciliation complete", cutoff=cutoff.isoformat(), **stats)
    return stats
