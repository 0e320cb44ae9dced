"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    database_url: str
    store_backend: str = "postgres"
    db_pool_max: int = 20
    port: int = 8080
    log_level: str = "INFO"
    batch_size: int = 500
    max_concurrent_batches: int = 5
    batch_delay_ms: int = 50
    commit_max_attempts: int = 3
    fetch_timeout: int = 30
    csv_timeout: int = 60
    source_page_limit: int = 10000
    ontario_resource_id: Optional[str] = None
    bc_resource_id: Optional[str] = None
    alberta_resource_id: Optional[str] = None
    csv_path: Optional[str] = None
    data_url: Optional[str] = None
    rate_limit_per_day: int = 1000
    log_retention_days: int = 30


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    store_backend = os.getenv("STORE_BACKEND", "postgres").strip().lower()
    db_pool_max = int(os.getenv("DB_POOL_MAX", "20"))
    port = int(os.getenv("PORT", "8080"))
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    batch_size = int(os.getenv("BATCH_SIZE", "500"))
    max_concurrent_batches = int(os.getenv("MAX_CONCURRENT_BATCHES", "5"))
    batch_delay_ms = int(os.getenv("BATCH_DELAY_MS", "50"))
    commit_max_attempts = int(os.getenv("COMMIT_MAX_ATTEMPTS", "3"))
    fetch_timeout = int(os.getenv("FETCH_TIMEOUT", "30"))
    csv_timeout = int(os.getenv("CSV_TIMEOUT", "60"))
    source_page_limit = min(int(os.getenv("SOURCE_PAGE_LIMIT", "10000")), 10000)
    rate_limit_per_day = int(os.getenv("RATE_LIMIT_PER_DAY", "1000"))
    log_retention_days = int(os.getenv("LOG_RETENTION_DAYS", "30"))

    ontario_resource_id = _optional("ONTARIO_DATA_RESOURCE_ID")
    bc_resource_id = _optional("BC_DATA_RESOURCE_ID")
    alberta_resource_id = _optional("ALBERTA_DATA_RESOURCE_ID")
    csv_path = _optional("CSV_PATH")
    data_url = _optional("DATA_URL")

    if store_backend == "postgres" and not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not any((ontario_resource_id, bc_resource_id, alberta_resource_id, csv_path, data_url)):
        logger.warning("No data source is configured; syncs will fetch nothing.")
    if store_backend == "postgres" and db_pool_max <= max_concurrent_batches:
        logger.warning(
            "DB_POOL_MAX (%d) leaves no connections for API requests while %d batches commit.",
            db_pool_max,
            max_concurrent_batches,
        )

    return Settings(
        database_url=database_url,
        store_backend=store_backend,
        db_pool_max=db_pool_max,
        port=port,
        log_level=log_level,
        batch_size=batch_size,
        max_concurrent_batches=max_concurrent_batches,
        batch_delay_ms=batch_delay_ms,
        commit_max_attempts=commit_max_attempts,
        fetch_timeout=fetch_timeout,
        csv_timeout=csv_timeout,
        source_page_limit=source_page_limit,
        ontario_resource_id=ontario_resource_id,
        bc_resource_id=bc_resource_id,
        alberta_resource_id=alberta_resource_id,
        csv_path=csv_path,
        data_url=data_url,
        rate_limit_per_day=rate_limit_per_day,
        log_retention_days=log_retention_days,
    )
