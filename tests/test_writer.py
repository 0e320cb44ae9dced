from datetime import datetime, timezone

import pytest

from bizdir.core.errors import StoreError
from bizdir.core.store import MemoryDocumentStore
from bizdir.etl import writer
from bizdir.models import BUSINESSES, Business

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FlakyStore(MemoryDocumentStore):
    """Fails the first ``failures`` commits, then behaves normally."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def _apply(self, ops):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreError("deadline exceeded")
        super()._apply(ops)


def make_writer(store, **kwargs):
    sleeps = []
    kwargs.setdefault("batch_size", 2)
    kwargs.setdefault("max_concurrent_batches", 2)
    batch_writer = writer.BatchWriter(store, clock=lambda: FIXED_NOW, sleep=sleeps.append, **kwargs)
    return batch_writer, sleeps


def businesses(count):
    return [Business(id=f"biz-{index}", name=f"Business {index}", city="Toronto", province="ON") for index in range(count)]


def test_chunked():
    assert writer.chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert writer.chunked([], 3) == []


def test_write_all_writes_every_business_in_batches(store):
    batch_writer, sleeps = make_writer(store, batch_delay=0.05)

    result = batch_writer.write_all(businesses(5), run_id="sync-1")

    assert (result.written, result.failed, result.errors) == (5, 0, [])
    assert store.count(BUSINESSES) == 5
    # Three chunks in two concurrent groups: one pause between groups.
    assert sleeps == [0.05]
    stored = store.get(BUSINESSES, "biz-0").data
    assert stored["updatedAt"] == FIXED_NOW.isoformat()
    assert stored["importRunId"] == "sync-1"
    assert stored["search_name"] == "BUSINESS 0"


def test_write_all_is_idempotent_and_merges(store):
    store.batch().set(BUSINESSES, "biz-0", {"name": "Old", "verified": True}).commit()
    batch_writer, _ = make_writer(store)

    batch_writer.write_all(businesses(3))
    batch_writer.write_all(businesses(3))

    assert store.count(BUSINESSES) == 3
    stored = store.get(BUSINESSES, "biz-0").data
    assert stored["name"] == "Business 0"
    assert stored["verified"] is True


def test_commit_retries_with_backoff():
    store = FlakyStore(failures=2)
    batch_writer, sleeps = make_writer(store, max_attempts=3, backoff_seconds=1.0)

    result = batch_writer.write_all(businesses(1))

    assert result.written == 1
    assert store.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_failed_batches_are_counted_not_raised(caplog):
    store = FlakyStore(failures=100)
    batch_writer, _ = make_writer(store, batch_size=2, max_concurrent_batches=1, max_attempts=2, batch_delay=0)

    with caplog.at_level("ERROR"):
        result = batch_writer.write_all(businesses(3))

    assert result.written == 0
    assert result.failed == 3
    assert len(result.errors) == 2
    assert result.errors[0].startswith("Batch commit failed after 2 attempts")


def test_commit_with_retry_reraises_last_error():
    store = FlakyStore(failures=5)
    batch = store.batch().set("things", "t1", {"a": 1})
    with pytest.raises(StoreError):
        writer.commit_with_retry(batch, max_attempts=2, backoff_seconds=0, sleep=lambda _: None)
    assert store.attempts == 2


def test_write_all_with_nothing_to_write(store):
    batch_writer, _ = make_writer(store)
    result = batch_writer.write_all([])
    assert (result.written, result.failed) == (0, 0)


def test_invalid_batch_size_rejected(store):
    with pytest.raises(ValueError):
        writer.BatchWriter(store, batch_size=0)
