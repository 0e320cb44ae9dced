"""Client utilities for open-data business sources (CKAN datastore APIs and CSV files)."""

import csv
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from bizdir.core.config import Settings
from bizdir.core.errors import SourceFetchError

logger = logging.getLogger(__name__)
_SESSION = requests.Session()

DATASTORE = "datastore"
CSV = "csv"

MAX_PAGE_LIMIT = 10000

RawRecord = Dict[str, Any]


@dataclass(frozen=True)
class SourceConfig:
    key: str
    name: str
    kind: str
    province: str
    url: Optional[str] = None
    resource_id: Optional[str] = None
    path: Optional[str] = None


def build_sources(settings: Settings) -> List[SourceConfig]:
    """Return the configured sources in the order they are synced."""
    sources = [
        SourceConfig(
            key="ontario",
            name="Ontario Open Data",
            kind=DATASTORE,
            url="https://data.ontario.ca/api/3/action/datastore_search",
            resource_id=settings.ontario_resource_id,
            province="ON",
        ),
        SourceConfig(
            key="bc",
            name="BC Data Catalogue",
            kind=DATASTORE,
            url="https://catalogue.data.gov.bc.ca/api/3/action/datastore_search",
            resource_id=settings.bc_resource_id,
            province="BC",
        ),
        SourceConfig(
            key="alberta",
            name="Alberta Open Data",
            kind=DATASTORE,
            url="https://data.alberta.ca/api/3/action/datastore_search",
            resource_id=settings.alberta_resource_id,
            province="AB",
        ),
        SourceConfig(
            key="statscan",
            name="Statistics Canada",
            kind=DATASTORE,
            url="https://www150.statcan.gc.ca/t1/wds/rest/getCubeMetadata",
            province="ALL",
        ),
    ]
    if settings.csv_path or settings.data_url:
        sources.append(
            SourceConfig(
                key="open_canada",
                name="Open Canada CSV",
                kind=CSV,
                url=settings.data_url,
                path=settings.csv_path,
                province="ALL",
            )
        )
    return sources


def datastore_search(source: SourceConfig, limit: int = MAX_PAGE_LIMIT, timeout: int = 30) -> List[RawRecord]:
    """Issue one datastore_search request and return its records."""
    params = {"resource_id": source.resource_id, "limit": min(limit, MAX_PAGE_LIMIT)}
    try:
        response = _SESSION.get(source.url, params=params, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise SourceFetchError(f"{source.name}: {exc}") from exc

    if not isinstance(payload, dict) or payload.get("success") is False:
        error = payload.get("error") if isinstance(payload, dict) else None
        raise SourceFetchError(f"{source.name}: unsuccessful response {error or ''}".strip())
    records = (payload.get("result") or {}).get("records")
    if not isinstance(records, list):
        raise SourceFetchError(f"{source.name}: response has no result.records list")
    return [record for record in records if isinstance(record, dict)]


def parse_csv(text: str) -> List[RawRecord]:
    """Parse CSV text with a header row, skipping rows that cannot be mapped."""
    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration:
        return []
    except csv.Error as exc:
        raise SourceFetchError(f"unreadable CSV header: {exc}") from exc

    columns = [column.strip().lstrip("\ufeff") for column in header]
    records: List[RawRecord] = []
    skipped = 0
    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            skipped += 1
            logger.debug("Skipping malformed CSV row %d: %s", reader.line_num, exc)
            continue

        if not row or all(not cell.strip() for cell in row):
            continue
        if len(row) > len(columns):
            skipped += 1
            logger.debug("Skipping CSV row %d with %d columns", reader.line_num, len(row))
            continue
        records.append({column: cell.strip() for column, cell in zip(columns, row)})

    if skipped:
        logger.warning("Skipped %d malformed CSV rows", skipped)
    return records


def load_csv(source: SourceConfig, timeout: int = 60) -> List[RawRecord]:
    """Read CSV text from a local path when it exists, else from the source URL."""
    if source.path and Path(source.path).is_file():
        logger.info("Reading CSV from %s", source.path)
        try:
            text = Path(source.path).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise SourceFetchError(f"{source.name}: {exc}") from exc
        return parse_csv(text)

    if not source.url:
        raise SourceFetchError(f"{source.name}: no CSV file at {source.path!r} and no URL configured")

    logger.info("Fetching CSV from %s", source.url)
    try:
        response = _SESSION.get(source.url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise SourceFetchError(f"{source.name}: {exc}") from exc
    return parse_csv(response.text)


def fetch(source: SourceConfig, settings: Optional[Settings] = None) -> List[RawRecord]:
    """Fetch raw records for one source; any failure yields an empty list."""
    fetch_timeout = settings.fetch_timeout if settings else 30
    csv_timeout = settings.csv_timeout if settings else 60
    page_limit = settings.source_page_limit if settings else MAX_PAGE_LIMIT

    logger.info("Fetching data from %s...", source.name)
    try:
        if source.kind == CSV:
            records = load_csv(source, timeout=csv_timeout)
        elif not source.resource_id:
            logger.info("Skipping %s as it does not have a resource_id.", source.name)
            return []
        else:
            records = datastore_search(source, limit=page_limit, timeout=fetch_timeout)
    except SourceFetchError as exc:
        logger.error("Error fetching data from %s: %s", source.name, exc)
        return []

    logger.info("Fetched %d records from %s", len(records), source.name)
    return records
