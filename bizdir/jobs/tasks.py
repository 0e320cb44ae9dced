"""Periodic maintenance tasks, invoked by an external scheduler (cron, Cloud Scheduler).

Every task is idempotent and can be retried independently:

    python -m bizdir.jobs.tasks sync            # weekly, Sunday 02:00 America/Toronto
    python -m bizdir.jobs.tasks cleanup-logs    # daily, 03:00
    python -m bizdir.jobs.tasks reset-limits    # daily, 00:00
    python -m bizdir.jobs.tasks usage-report    # weekly, Monday 09:00
    python -m bizdir.jobs.tasks issue-key --user <user id>
"""

import argparse
import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bizdir.core.config import get_settings
from bizdir.core.gateway import Gateway
from bizdir.core.store import DocumentStore, Filter, open_store
from bizdir.etl.writer import BATCH_SIZE, chunked, commit_with_retry
from bizdir.jobs.sync import SyncOrchestrator, build_orchestrator
from bizdir.models import ADMIN_NOTIFICATIONS, API_LOGS, USAGE, WEEKLY_REPORTS, SyncResult

logger = logging.getLogger(__name__)

CLEANUP_BATCH_LIMIT = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def notify_admins(store: DocumentStore, subject: str, data: Dict[str, Any], now: Optional[datetime] = None) -> None:
    store.add(
        ADMIN_NOTIFICATIONS,
        {"timestamp": (now or _utcnow()).isoformat(), "subject": subject, "data": data, "read": False},
    )
    logger.info("Admin notification created: %s", subject)


def sync_business_data(orchestrator: SyncOrchestrator, store: DocumentStore) -> SyncResult:
    """Scheduled sync; failures notify admins and are re-raised for the scheduler to retry."""
    logger.info("Starting scheduled business data sync...")
    try:
        result = orchestrator.sync_all(trigger="scheduled")
    except Exception as exc:
        logger.error("Scheduled sync failed: %s", exc)
        notify_admins(store, "Data Sync Failed", {"error": str(exc), "timestamp": _utcnow().isoformat()})
        raise

    logger.info("Sync completed successfully: %s", result.as_dict())
    notify_admins(store, "Data Sync Successful", {**result.as_dict(), "timestamp": _utcnow().isoformat()})
    return result


def cleanup_old_logs(
    store: DocumentStore,
    retention_days: int = 30,
    now: Optional[datetime] = None,
    limit: int = CLEANUP_BATCH_LIMIT,
) -> int:
    """Delete up to ``limit`` api_logs entries older than the retention window."""
    cutoff = ((now or _utcnow()) - timedelta(days=retention_days)).isoformat()
    old_logs = store.query(API_LOGS, [Filter("timestamp", "<", cutoff)], limit=limit)
    if not old_logs:
        logger.info("No old logs to delete")
        return 0

    batch = store.batch()
    for document in old_logs:
        batch.delete(API_LOGS, document.id)
    commit_with_retry(batch)
    logger.info("Deleted %d old log entries", len(old_logs))
    return len(old_logs)


def reset_daily_limits(store: DocumentStore, batch_size: int = BATCH_SIZE) -> int:
    """Zero every per-user request counter."""
    counters = [document.id for document in store.stream(USAGE)]
    for chunk in chunked(counters, batch_size):
        batch = store.batch()
        for user_id in chunk:
            batch.set(USAGE, user_id, {"requestsToday": 0}, merge=True)
        commit_with_retry(batch)
    logger.info("Reset request counters for %d users", len(counters))
    return len(counters)


def weekly_usage_report(store: DocumentStore, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Summarise the last seven days of API traffic and store the report."""
    now = now or _utcnow()
    week_start = now - timedelta(days=7)
    logs = store.query(API_LOGS, [Filter("timestamp", ">=", week_start.isoformat())])

    status_codes: Counter = Counter()
    endpoints: Counter = Counter()
    users = set()
    total_duration = 0
    for document in logs:
        data = document.data
        users.add(data.get("userId"))
        total_duration += data.get("duration") or 0
        status_codes[str(data.get("statusCode") or 500)] += 1
        endpoints[str(data.get("endpoint") or "unknown").split("?")[0]] += 1

    stats = {
        "totalRequests": len(logs),
        "uniqueUsers": len(users),
        "avgDuration": total_duration / len(logs) if logs else 0,
        "statusCodes": dict(status_codes),
        "topEndpoints": dict(endpoints.most_common(10)),
    }
    store.add(
        WEEKLY_REPORTS,
        {"timestamp": now.isoformat(), "weekStarting": week_start.isoformat(), "stats": stats},
    )
    logger.info("Weekly report generated: %s", stats)
    notify_admins(store, "Weekly Usage Report", stats, now=now)
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a business directory maintenance task")
    subparsers = parser.add_subparsers(dest="task", required=True)
    subparsers.add_parser("sync", help="Sync business data from every configured source")
    subparsers.add_parser("cleanup-logs", help="Delete expired API request logs")
    subparsers.add_parser("reset-limits", help="Reset daily request counters")
    subparsers.add_parser("usage-report", help="Generate the weekly usage report")
    issue_key = subparsers.add_parser("issue-key", help="Generate a new API key for a user")
    issue_key.add_argument("--user", dest="user_id", required=True, help="User document id")
    return parser


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args()
    store = open_store(settings)

    if args.task == "sync":
        output: Any = sync_business_data(build_orchestrator(store, settings), store).as_dict()
    elif args.task == "cleanup-logs":
        output = {"deleted": cleanup_old_logs(store, retention_days=settings.log_retention_days)}
    elif args.task == "reset-limits":
        output = {"reset": reset_daily_limits(store)}
    elif args.task == "usage-report":
        output = weekly_usage_report(store)
    else:
        output = {"apiKey": Gateway(store).issue_key(args.user_id)}
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
