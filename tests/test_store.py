"""Tests for the SQLAlchemy event store."""

from datetime import UTC, datetime

import pytest

from eventintel.exceptions import UniqueConstraintViolation
from eventintel.ingest.normalize import Normalizer
from eventintel.ingest.store import NormalizedEventFilter, RawEventFilter
from eventintel.models import RawEventStatus


class TestUnitOfWork:
    def test_upsert_creates_then_reuses(self, store):
        unit = store.begin_unit()
        first = unit.upsert_raw_event_if_absent("h1", "A", {"amount": 1}, RawEventStatus.PROCESSING.value)
        first_id = first.id
        store.commit(unit)

        unit = store.begin_unit()
        second = unit.upsert_raw_event_if_absent("h1", "A", {"amount": 999}, RawEventStatus.FAILED.value)
        assert second.id == first_id
        assert second.payload == {"amount": 1}
        assert second.status == RawEventStatus.PROCESSING
        store.rollback(unit)

    def test_find_raw_event_filters_status(self, store):
        unit = store.begin_unit()
        unit.upsert_raw_event_if_absent("h2", "A", {}, RawEventStatus.FAILED.value)
        assert unit.find_raw_event_by_hash("h2") is not None
        assert unit.find_raw_event_by_hash("h2", {RawEventStatus.NORMALIZED.value}) is None
        store.rollback(unit)

    def test_insert_normalized_conflict(self, store):
        record = Normalizer().normalize("A", {"metric": "x", "amount": 1})

        unit = store.begin_unit()
        raw = unit.upsert_raw_event_if_absent("h3", "A", {}, RawEventStatus.PROCESSING.value)
        unit.insert_normalized_event(record, raw.id)
        with pytest.raises(UniqueConstraintViolation):
            unit.insert_normalized_event(record, raw.id)
        # The unit stays usable after the savepoint rollback.
        assert unit.find_normalized_event_by_hash(record.normalized_hash) is not None
        store.commit(unit)

        assert store.count_normalized_events() == 1

    def test_rollback_discards_writes(self, store):
        unit = store.begin_unit()
        unit.upsert_raw_event_if_absent("h4", "A", {}, RawEventStatus.PROCESSING.value)
        store.rollback(unit)
        store.rollback(unit)  # idempotent

        assert store.count_raw_events_by_status(RawEventStatus.PROCESSING.value) == 0


class TestListing:
    def test_list_raw_events(self, processor, store):
        processor.process_event({"source": "A", "payload": {"amount": 1}})
        processor.process_event({"source": "B", "payload": {"amount": 2}})
        processor.process_event({"source": "A", "payload": {"amount": 3}}, simulate_failure=True)

        rows, total = store.list_raw_events(RawEventFilter(source="A"))
        assert total == 2
        assert len(rows) == 2

        rows, total = store.list_raw_events(RawEventFilter(status=RawEventStatus.FAILED.value))
        assert total == 1
        assert rows[0].error_message == "Simulated database failure"

    def test_list_raw_events_pagination(self, processor, store):
        for amount in range(5):
            processor.process_event({"source": "A", "payload": {"amount": amount}})

        rows, total = store.list_raw_events(RawEventFilter(limit=2, skip=1))
        assert total == 5
        assert len(rows) == 2

    def test_list_normalized_events_orders_by_timestamp(self, store, make_normalized_event):
        make_normalized_event("A", 1, "m", datetime(2024, 1, 1, tzinfo=UTC))
        make_normalized_event("A", 2, "m", None)
        make_normalized_event("A", 3, "m", datetime(2024, 3, 1, tzinfo=UTC))
        make_normalized_event("B", 4, "m", datetime(2024, 2, 1, tzinfo=UTC))

        rows, total = store.list_normalized_events(NormalizedEventFilter(client_id="A"))

        assert total == 3
        assert [row.amount for row in rows] == [3, 1, 2]

    def test_scan_respects_range(self, store, make_normalized_event):
        make_normalized_event("A", 1, "m", datetime(2024, 1, 31, tzinfo=UTC))
        make_normalized_event("A", 2, "m", datetime(2024, 2, 1, tzinfo=UTC))

        rows = store.scan_normalized_events(NormalizedEventFilter(end=datetime(2024, 1, 31, tzinfo=UTC)))

        assert [row.amount for row in rows] == [1]
