"""Grouped statistics over committed normalized events (read-only)."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

import structlog

from eventintel.config import settings
from eventintel.ingest.store import EventStore, NormalizedEventFilter

logger = structlog.get_logger()

ALL_GROUP = "all"


class GroupBy(StrEnum):
    NONE = "none"
    BY_CLIENT = "byClient"


class AggregatableEvent(Protocol):
    client_id: str
    metric: str | None
    amount: float | None
    timestamp: datetime | None


@dataclass(frozen=True)
class AggregateFilter:
    client_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    def to_event_filter(self) -> NormalizedEventFilter:
        return NormalizedEventFilter(client_id=self.client_id, start=self.start_date, end=self.end_date)

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id or ALL_GROUP,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }


@dataclass(frozen=True)
class AggregateSummary:
    """Statistics for one group; group is None when ungrouped.

    Records without an amount count toward `count` and contribute 0 to
    total, average, min and max.
    """

    group: str | None
    count: int
    total_amount: float
    average_amount: float
    min_amount: float
    max_amount: float
    metrics: list[str] = field(default_factory=list)
    min_timestamp: datetime | None = None
    max_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group if self.group is not None else ALL_GROUP,
            "totals": {"amount": self.total_amount, "count": self.count},
            "averages": {"amount": self.average_amount},
            "ranges": {
                "amount": {"min": self.min_amount, "max": self.max_amount},
                "date": {
                    "min": self.min_timestamp.isoformat() if self.min_timestamp else None,
                    "max": self.max_timestamp.isoformat() if self.max_timestamp else None,
                },
            },
            "metrics": list(self.metrics),
        }


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class _Accumulator:
    def __init__(self) -> None:
        self.count = 0
        self.total = 0.0
        self.min_amount: float | None = None
        self.max_amount: float | None = None
        self.metrics: set[str] = set()
        self.min_timestamp: datetime | None = None
        self.max_timestamp: datetime | None = None

    def add(self, event: AggregatableEvent) -> None:
        amount = event.amount if event.amount is not None else 0.0
        self.count += 1
        self.total += amount
        self.min_amount = amount if self.min_amount is None else min(self.min_amount, amount)
        self.max_amount = amount if self.max_amount is None else max(self.max_amount, amount)
        if event.metric:
            self.metrics.add(event.metric)

        timestamp = _as_utc(event.timestamp)
        if timestamp is not None:
            if self.min_timestamp is None or timestamp < self.min_timestamp:
                self.min_timestamp = timestamp
            if self.max_timestamp is None or timestamp > self.max_timestamp:
                self.max_timestamp = timestamp

    def summary(self, group: str | None, digits: int) -> AggregateSummary:
        return AggregateSummary(
            group=group,
            count=self.count,
            total_amount=round(self.total, digits),
            average_amount=round(self.total / self.count, digits) if self.count else 0.0,
            min_amount=self.min_amount or 0.0,
            max_amount=self.max_amount or 0.0,
            metrics=sorted(self.metrics),
            min_timestamp=self.min_timestamp,
            max_timestamp=self.max_timestamp,
        )


def compute_aggregates(
    events: Iterable[AggregatableEvent],
    group_by: GroupBy = GroupBy.NONE,
    round_digits: int | None = None,
) -> list[AggregateSummary]:
    """Partition events and summarize each partition.

    Ungrouped input yields at most one summary; client groups are ordered by
    client id.
    """
    digits = settings.aggregate_round_digits if round_digits is None else round_digits
    partitions: dict[str | None, _Accumulator] = {}

    for event in events:
        key = event.client_id if group_by is GroupBy.BY_CLIENT else None
        partitions.setdefault(key, _Accumulator()).add(event)

    return [partitions[key].summary(key, digits) for key in sorted(partitions, key=lambda k: k or "")]


def get_aggregates(
    store: EventStore,
    aggregate_filter: AggregateFilter | None = None,
    group_by: GroupBy = GroupBy.NONE,
) -> list[AggregateSummary]:
    """Filter committed normalized events and aggregate them.

    Storage errors propagate.
    """
    aggregate_filter = aggregate_filter or AggregateFilter()
    events = store.scan_normalized_events(aggregate_filter.to_event_filter())
    summaries = compute_aggregates(events, group_by)
    logger.info("Aggregates computed", events=len(events), groups=len(summaries), group_by=group_by.value)
    return summaries


def get_aggregates_by_client(
    store: EventStore,
    aggregate_filter: AggregateFilter | None = None,
) -> list[AggregateSummary]:
    """Per-client summaries, largest total amount first."""
    summaries = get_aggregates(store, aggregate_filter, GroupBy.BY_CLIENT)
    return sorted(summaries, key=lambda s: (-s.total_amount, s.group or ""))
