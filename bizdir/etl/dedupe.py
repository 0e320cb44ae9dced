"""Post-ingestion removal of duplicate businesses."""

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Tuple

from bizdir.core.errors import BatchCommitError, StoreError
from bizdir.core.store import DocumentStore
from bizdir.etl.writer import BATCH_SIZE, COMMIT_BACKOFF_SECONDS, COMMIT_MAX_ATTEMPTS, chunked, commit_with_retry
from bizdir.models import BUSINESSES

logger = logging.getLogger(__name__)


def identity_key(data: Mapping[str, Any]) -> Tuple[str, str, str]:
    return tuple(str(data.get(field) or "").strip().lower() for field in ("name", "city", "province"))


class Deduplicator:
    """Collapses businesses sharing a lowercased (name, city, province) key.

    This is a full scan of the collection, O(n) in its size; it runs once per
    sync, never per request.
    """

    def __init__(
        self,
        store: DocumentStore,
        batch_size: int = BATCH_SIZE,
        max_attempts: int = COMMIT_MAX_ATTEMPTS,
        backoff_seconds: float = COMMIT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def find_duplicates(self) -> List[str]:
        seen: Dict[Tuple[str, str, str], str] = {}
        duplicates: List[str] = []
        for document in self.store.stream(BUSINESSES):
            key = identity_key(document.data)
            if key in seen:
                duplicates.append(document.id)
            else:
                seen[key] = document.id
        return duplicates

    def deduplicate(self) -> int:
        """Delete every duplicate after the first occurrence; return the count removed."""
        logger.info("Starting deduplication process...")
        duplicates = self.find_duplicates()

        deleted = 0
        for chunk in chunked(duplicates, self.batch_size):
            batch = self.store.batch()
            for doc_id in chunk:
                batch.delete(BUSINESSES, doc_id)
            try:
                commit_with_retry(batch, self.max_attempts, self.backoff_seconds, self.sleep)
            except StoreError as exc:
                raise BatchCommitError(
                    f"Deleting duplicates failed after {deleted} removals: {exc}",
                    failed=len(duplicates) - deleted,
                ) from exc
            deleted += len(chunk)

        logger.info("Removed %d duplicate businesses", deleted)
        return deleted
