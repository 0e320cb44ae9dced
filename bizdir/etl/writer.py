"""Batched, idempotent persistence of normalised businesses."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from bizdir.core.errors import StoreError
from bizdir.core.store import DocumentStore, WriteBatch
from bizdir.models import BUSINESSES, Business, WriteResult

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
MAX_CONCURRENT_BATCHES = 5
BATCH_DELAY_SECONDS = 0.05
COMMIT_MAX_ATTEMPTS = 3
COMMIT_BACKOFF_SECONDS = 1.0


def chunked(items: Sequence, size: int) -> List[Sequence]:
    return [items[start : start + size] for start in range(0, len(items), size)]


def commit_with_retry(
    batch: WriteBatch,
    max_attempts: int = COMMIT_MAX_ATTEMPTS,
    backoff_seconds: float = COMMIT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Commit a batch, retrying with linearly increasing backoff.

    Raises the last StoreError once all attempts are exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            batch.commit()
            return
        except StoreError as exc:
            logger.warning("Batch commit failed (attempt %s/%s): %s", attempt, max_attempts, exc)
            if attempt >= max_attempts:
                raise
            sleep(backoff_seconds * attempt)


class BatchWriter:
    """Upsert-merges businesses by id in bounded, concurrently committed batches."""

    def __init__(
        self,
        store: DocumentStore,
        batch_size: int = BATCH_SIZE,
        max_concurrent_batches: int = MAX_CONCURRENT_BATCHES,
        batch_delay: float = BATCH_DELAY_SECONDS,
        max_attempts: int = COMMIT_MAX_ATTEMPTS,
        backoff_seconds: float = COMMIT_BACKOFF_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size
        self.max_concurrent_batches = max(1, max_concurrent_batches)
        self.batch_delay = batch_delay
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.clock = clock
        self.sleep = sleep

    def commit(self, batch: WriteBatch) -> None:
        commit_with_retry(batch, self.max_attempts, self.backoff_seconds, self.sleep)

    def _write_chunk(self, chunk: Sequence[Business], stamp: str, run_id: Optional[str]) -> WriteResult:
        batch = self.store.batch()
        for business in chunk:
            document = business.to_document()
            document["updatedAt"] = stamp
            document["importedAt"] = stamp
            if run_id:
                document["importRunId"] = run_id
            batch.set(BUSINESSES, business.id, document, merge=True)
        try:
            self.commit(batch)
        except StoreError as exc:
            message = f"Batch commit failed after {self.max_attempts} attempts: {exc}"
            logger.error(message)
            return WriteResult(written=0, failed=len(chunk), errors=[message])
        return WriteResult(written=len(chunk))

    def write_all(self, businesses: Iterable[Business], run_id: Optional[str] = None) -> WriteResult:
        """Persist every business; failed batches are reported, not raised."""
        items = list(businesses)
        result = WriteResult()
        if not items:
            return result

        stamp = self.clock().isoformat()
        chunks = chunked(items, self.batch_size)
        groups = chunked(chunks, self.max_concurrent_batches)
        with ThreadPoolExecutor(max_workers=self.max_concurrent_batches) as executor:
            for index, group in enumerate(groups):
                outcomes = list(executor.map(lambda chunk: self._write_chunk(chunk, stamp, run_id), group))
                for outcome in outcomes:
                    result.written += outcome.written
                    result.failed += outcome.failed
                    result.errors.extend(outcome.errors)
                logger.info(
                    "Write progress: %d/%d batches (%d written, %d failed)",
                    min((index + 1) * self.max_concurrent_batches, len(chunks)),
                    len(chunks),
                    result.written,
                    result.failed,
                )
                if index + 1 < len(groups) and self.batch_delay:
                    self.sleep(self.batch_delay)

        logger.info("Successfully wrote %d businesses (%d failed)", result.written, result.failed)
        return result
