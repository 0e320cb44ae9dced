"""API key authentication, daily quotas and request audit logging."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from bizdir.core.errors import StoreError
from bizdir.core.store import DocumentStore, Filter
from bizdir.models import API_LOGS, USAGE, USERS

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "bh_live_"
BEARER_PREFIX = "Bearer "


class AuthError(Exception):
    """Raised when a request cannot be authenticated."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Quota:
    limit: int
    used: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exceeded(self) -> bool:
        return self.used > self.limit

    def retry_after(self, now: datetime) -> int:
        return max(1, int((self.reset_at - now).total_seconds()))

    def headers(self, now: datetime) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
            "X-RateLimit-Policy": f"{self.limit};w=86400",
        }
        if self.remaining == 0:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers


def next_utc_midnight(now: datetime) -> datetime:
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


def parse_bearer(header: Optional[str]) -> str:
    if not header or not header.startswith(BEARER_PREFIX):
        raise AuthError(401, "API key is missing or improperly formatted.")
    api_key = header[len(BEARER_PREFIX):].strip()
    if not api_key:
        raise AuthError(401, "API key is missing.")
    return api_key


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


class Gateway:
    """Request-level policies enforced before the query engine is reached."""

    def __init__(self, store: DocumentStore, daily_limit: int = 1000) -> None:
        self.store = store
        self.daily_limit = daily_limit

    def authenticate(self, authorization: Optional[str]) -> Caller:
        api_key = parse_bearer(authorization)
        users = self.store.query(USERS, [Filter("apiKey", "==", api_key)], limit=1)
        if not users:
            raise AuthError(403, "Invalid API key.")
        user = users[0]
        return Caller(user_id=user.id, role=str(user.data.get("role") or "user"))

    def consume(self, caller: Caller, now: Optional[datetime] = None) -> Quota:
        """Count one request against today's quota with an atomic increment."""
        now = now or datetime.now(timezone.utc)
        used = self.store.increment(USAGE, caller.user_id, "requestsToday", 1)
        return Quota(limit=self.daily_limit, used=used, reset_at=next_utc_midnight(now))

    def issue_key(self, user_id: str) -> str:
        """Generate and store a new API key for a user."""
        api_key = generate_api_key()
        batch = self.store.batch()
        batch.set(
            USERS,
            user_id,
            {"apiKey": api_key, "updatedAt": datetime.now(timezone.utc).isoformat()},
            merge=True,
        )
        batch.commit()
        logger.info("Issued API key for user %s", user_id)
        return api_key

    def audit(self, entry: Mapping[str, Any]) -> None:
        """Append an api_logs entry; failures are logged and never raised."""
        try:
            self.store.add(API_LOGS, dict(entry))
        except StoreError as exc:
            logger.error("Failed to write API log: %s", exc)
