import threading
from datetime import datetime, timezone

import pytest

from bizdir.core.errors import BatchCommitError, StoreError, SyncInProgressError
from bizdir.core.store import MemoryDocumentStore
from bizdir.etl.writer import BatchWriter
from bizdir.jobs import sync
from bizdir.models import BUSINESSES, SYNC_LOGS
from bizdir.vendors.open_data import CSV, DATASTORE, SourceConfig

ONTARIO = SourceConfig(key="ontario", name="Ontario Open Data", kind=DATASTORE, province="ON", resource_id="r1")
NATIONAL = SourceConfig(key="open_canada", name="Open Canada CSV", kind=CSV, province="ALL", path="x.csv")


def make_orchestrator(store, records_by_key, **kwargs):
    def fetcher(source):
        records = records_by_key[source.key]
        if isinstance(records, Exception):
            raise records
        return records

    kwargs.setdefault("writer", BatchWriter(store, batch_delay=0, sleep=lambda _: None))
    return sync.SyncOrchestrator(
        store,
        sources=[ONTARIO, NATIONAL],
        fetcher=fetcher,
        clock=lambda: datetime(2024, 5, 5, 2, 0, tzinfo=timezone.utc),
        **kwargs,
    )


def sync_logs(store):
    return [document.data for document in store.stream(SYNC_LOGS)]


def test_sync_collapses_same_business_from_two_sources(store):
    maple = {"business_name": "Maple Syrup Co", "city": "Ottawa", "postal_code": "k1p5m7"}
    orchestrator = make_orchestrator(
        store,
        {
            "ontario": [maple],
            "open_canada": [{"Business Name": "MAPLE SYRUP CO", "City": "ottawa", "Province": "on"}],
        },
    )

    result = orchestrator.sync_all()

    assert result.fetched == 2
    assert result.normalized == 2
    assert result.written == 2
    assert result.deduplicated == 1
    assert store.count(BUSINESSES) == 1
    logs = sync_logs(store)
    assert len(logs) == 1
    assert logs[0]["status"] == "success"
    assert logs[0]["deduplicated"] == 1
    assert logs[0]["trigger"] == "manual"


def test_sync_counts_skipped_rows_and_tolerates_failing_source(store):
    orchestrator = make_orchestrator(
        store,
        {
            "ontario": [{"business_name": "Acme", "city": "Toronto"}, {"city": "No Name"}],
            "open_canada": RuntimeError("disk on fire"),
        },
    )

    result = orchestrator.sync_all(trigger="scheduled")

    assert result.fetched == 2
    assert result.normalized == 1
    assert result.skipped == 1
    assert result.written == 1
    assert store.count(BUSINESSES) == 1
    assert sync_logs(store)[0]["trigger"] == "scheduled"


def test_sync_is_idempotent(store):
    records = {"ontario": [{"business_name": "Acme", "city": "Toronto"}], "open_canada": []}
    orchestrator = make_orchestrator(store, records)

    orchestrator.sync_all()
    second = orchestrator.sync_all()

    assert second.deduplicated == 0
    assert store.count(BUSINESSES) == 1
    assert len(sync_logs(store)) == 2


def test_sync_records_error_log_when_writes_fail():
    class ReadOnlyBusinesses(MemoryDocumentStore):
        def _apply(self, ops):
            if any(op.collection == BUSINESSES for op in ops):
                raise StoreError("quota exceeded")
            super()._apply(ops)

    store = ReadOnlyBusinesses()
    writer = BatchWriter(store, max_attempts=1, batch_delay=0, sleep=lambda _: None)
    orchestrator = make_orchestrator(
        store,
        {"ontario": [{"business_name": "Acme", "city": "Toronto"}], "open_canada": []},
        writer=writer,
    )

    with pytest.raises(BatchCommitError):
        orchestrator.sync_all()

    logs = sync_logs(store)
    assert len(logs) == 1
    assert logs[0]["status"] == "error"
    assert logs[0]["failed"] == 1
    assert "quota exceeded" in logs[0]["error"]
    assert orchestrator.running is False


def test_concurrent_sync_is_rejected(store):
    started = threading.Event()
    release = threading.Event()

    def slow_fetcher(source):
        started.set()
        release.wait(timeout=5)
        return []

    orchestrator = sync.SyncOrchestrator(store, sources=[ONTARIO], fetcher=slow_fetcher)
    worker = threading.Thread(target=orchestrator.sync_all)
    worker.start()
    try:
        assert started.wait(timeout=5)
        assert orchestrator.running is True
        with pytest.raises(SyncInProgressError):
            orchestrator.sync_all()
    finally:
        release.set()
        worker.join(timeout=5)

    assert orchestrator.running is False
    assert len(sync_logs(store)) == 1


def test_build_parser_accepts_repeated_sources():
    args = sync.build_parser().parse_args(["--source", "ontario", "--source", "bc"])
    assert args.sources == ["ontario", "bc"]


def test_case_variants_of_one_business_store_a_single_document(store):
    quebec = SourceConfig(key="quebec", name="Quebec Registry", kind=DATASTORE, province="QC", resource_id="q1")
    records = [
        {"business_name": "Maple Syrup Inc", "city": "Montreal", "province": "QC"},
        {"NAME": "MAPLE SYRUP INC", "City": "montreal"},
    ]
    orchestrator = sync.SyncOrchestrator(
        store,
        sources=[quebec],
        fetcher=lambda source: records,
        writer=BatchWriter(store, batch_size=1, max_concurrent_batches=1, batch_delay=0),
    )

    result = orchestrator.sync_all()

    assert result.normalized == 2
    assert store.count(BUSINESSES) == 1
    [document] = list(store.stream(BUSINESSES))
    assert document.data["name"] == "MAPLE SYRUP INC"
    assert document.data["province"] == "QC"
