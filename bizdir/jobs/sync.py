"""Sync orchestrator: fetch every source, normalise, write, deduplicate, log the run."""

import argparse
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from bizdir.core.config import Settings, get_settings
from bizdir.core.errors import BatchCommitError, SyncInProgressError
from bizdir.core.store import DocumentStore, open_store
from bizdir.etl.dedupe import Deduplicator
from bizdir.etl.transform import Normalizer
from bizdir.etl.writer import BatchWriter
from bizdir.models import SYNC_LOGS, Business, SyncLog, SyncResult
from bizdir.vendors import open_data
from bizdir.vendors.open_data import RawRecord, SourceConfig

logger = logging.getLogger(__name__)

Fetcher = Callable[[SourceConfig], List[RawRecord]]


class SyncOrchestrator:
    """Runs one full ingestion pass; only one pass may run at a time per process."""

    def __init__(
        self,
        store: DocumentStore,
        sources: Sequence[SourceConfig],
        fetcher: Fetcher,
        normalizer: Optional[Normalizer] = None,
        writer: Optional[BatchWriter] = None,
        deduplicator: Optional[Deduplicator] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.sources = list(sources)
        self.fetcher = fetcher
        self.normalizer = normalizer or Normalizer()
        self.writer = writer or BatchWriter(store)
        self.deduplicator = deduplicator or Deduplicator(store)
        self.clock = clock
        self._run_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def _collect(self, result: SyncResult) -> List[Business]:
        businesses: List[Business] = []
        for source in self.sources:
            try:
                raw_records = self.fetcher(source)
                normalized, skipped = self.normalizer.normalize_many(raw_records, source.name, source.province)
            except Exception as exc:  # noqa: BLE001
                logger.error("Error processing %s: %s", source.name, exc)
                continue

            result.fetched += len(raw_records)
            result.normalized += len(normalized)
            result.skipped += skipped
            businesses.extend(normalized)
            logger.info("%s: fetched %d, normalized %d", source.name, len(raw_records), len(normalized))
        return businesses

    def _record(self, status: str, result: SyncResult, trigger: str, error: Optional[str] = None) -> None:
        log = SyncLog(timestamp=self.clock(), status=status, result=result, trigger=trigger, error=error)
        self.store.add(SYNC_LOGS, log.to_document())

    def sync_all(self, trigger: str = "manual") -> SyncResult:
        """Run the full pipeline and append exactly one sync log entry."""
        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgressError("a data sync is already running")
        try:
            return self._sync(trigger)
        finally:
            self._run_lock.release()

    def _sync(self, trigger: str) -> SyncResult:
        logger.info("Starting full data sync (trigger=%s)...", trigger)
        started = time.monotonic()
        run_id = f"sync-{uuid.uuid4().hex[:12]}"
        result = SyncResult()

        try:
            businesses = self._collect(result)

            write_result = self.writer.write_all(businesses, run_id=run_id)
            result.written = write_result.written
            result.failed = write_result.failed
            if write_result.failed:
                raise BatchCommitError(
                    f"{write_result.failed} businesses failed to write: {'; '.join(write_result.errors[:3])}",
                    failed=write_result.failed,
                    errors=write_result.errors,
                )

            result.deduplicated = self.deduplicator.deduplicate()
        except Exception as exc:
            result.duration = round(time.monotonic() - started, 2)
            logger.error("Data sync failed after %.2fs: %s", result.duration, exc)
            self._record("error", result, trigger, error=str(exc) or exc.__class__.__name__)
            raise

        result.duration = round(time.monotonic() - started, 2)
        logger.info("Data sync completed in %.2fs", result.duration)
        self._record("success", result, trigger)
        return result


def build_orchestrator(store: DocumentStore, settings: Settings) -> SyncOrchestrator:
    """Wire the orchestrator from configuration."""
    writer = BatchWriter(
        store,
        batch_size=settings.batch_size,
        max_concurrent_batches=settings.max_concurrent_batches,
        batch_delay=settings.batch_delay_ms / 1000,
        max_attempts=settings.commit_max_attempts,
    )
    deduplicator = Deduplicator(store, batch_size=settings.batch_size, max_attempts=settings.commit_max_attempts)
    return SyncOrchestrator(
        store,
        sources=open_data.build_sources(settings),
        fetcher=lambda source: open_data.fetch(source, settings),
        writer=writer,
        deduplicator=deduplicator,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync business data from all configured open-data sources")
    parser.add_argument(
        "--source",
        dest="sources",
        action="append",
        help="Only sync the given source key (repeatable), e.g. ontario, bc, open_canada",
    )
    return parser


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args()

    store = open_store(settings)
    orchestrator = build_orchestrator(store, settings)
    if args.sources:
        orchestrator.sources = [source for source in orchestrator.sources if source.key in set(args.sources)]
        if not orchestrator.sources:
            raise SystemExit(f"No configured source matches {', '.join(args.sources)}")

    result = orchestrator.sync_all(trigger="cli")
    print(json.dumps(result.as_dict(), indent=2))


if __name__ == "__main__":
    main()
