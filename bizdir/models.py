"""Core data models shared by the ingestion pipeline and the query layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

BUSINESSES = "businesses"
SYNC_LOGS = "sync_logs"
USERS = "users"
USAGE = "usage"
API_LOGS = "api_logs"
WEEKLY_REPORTS = "weekly_reports"
ADMIN_NOTIFICATIONS = "admin_notifications"


@dataclass(slots=True)
class Business:
    """Canonical business record produced by the normalizer."""

    id: str
    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    category: Optional[str] = None
    naics_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    source: str = ""

    def to_document(self) -> Dict[str, Any]:
        """Return the stored form: absent fields dropped, search keys added."""
        document = {key: value for key, value in asdict(self).items() if value is not None and key != "id"}
        document["search_name"] = search_key(self.name)
        if self.city:
            document["search_city"] = search_key(self.city)
        if self.category:
            document["search_category"] = search_key(self.category)
        return document


@dataclass(slots=True)
class SyncResult:
    fetched: int = 0
    normalized: int = 0
    skipped: int = 0
    written: int = 0
    failed: int = 0
    deduplicated: int = 0
    duration: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SyncLog:
    """Append-only record of one orchestrator run."""

    timestamp: datetime
    status: str
    result: SyncResult = field(default_factory=SyncResult)
    trigger: str = "manual"
    error: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "trigger": self.trigger,
            **self.result.as_dict(),
        }
        if self.error:
            document["error"] = self.error
        return document


@dataclass(slots=True)
class WriteResult:
    written: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def search_key(value: str) -> str:
    """Uppercase, whitespace-collapsed form used by case-insensitive lookups."""
    return " ".join(value.split()).upper()
