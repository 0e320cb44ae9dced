"""HTTP entrypoint exposing the business directory API (Cloud Run friendly)."""

from __future__ import annotations

import csv
import io
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from flask import Blueprint, Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException

from bizdir.core.config import Settings, get_settings
from bizdir.core.errors import BatchCommitError, StoreError, SyncInProgressError, ValidationError
from bizdir.core.gateway import AuthError, Gateway
from bizdir.core.store import DocumentStore, open_store
from bizdir.core.validation import (
    DEFAULT_LIMIT,
    DEFAULT_RADIUS_KM,
    MAX_LIMIT,
    MAX_RADIUS_KM,
    parse_business_id,
    parse_choice,
    parse_float,
    parse_int,
    parse_pagination,
    parse_term,
)
from bizdir.jobs.sync import SyncOrchestrator, build_orchestrator
from bizdir.search.engine import EXPORT_MAX_ROWS, QueryEngine

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = (
    "id",
    "name",
    "address",
    "city",
    "province",
    "postal_code",
    "category",
    "naics_code",
    "phone",
    "email",
    "website",
    "latitude",
    "longitude",
    "source",
    "updatedAt",
)


def _error(status: int, error: str, message: str, **extra: Any):
    body = {"error": error, "message": message, **extra}
    return jsonify(body), status


def create_app(
    store: DocumentStore,
    settings: Optional[Settings] = None,
    engine: Optional[QueryEngine] = None,
    orchestrator: Optional[SyncOrchestrator] = None,
    gateway: Optional[Gateway] = None,
) -> Flask:
    """Build the Flask app around explicitly injected services."""
    settings = settings or get_settings()
    engine = engine or QueryEngine(store)
    gateway = gateway or Gateway(store, daily_limit=settings.rate_limit_per_day)
    if orchestrator is None:
        orchestrator = build_orchestrator(store, settings)

    app = Flask(__name__)
    api = Blueprint("api", __name__, url_prefix="/api/v1")

    # ---------- Gateway policies ----------

    @api.before_request
    def authorize() -> Any:
        g.started = time.monotonic()
        g.caller = None
        caller = gateway.authenticate(request.headers.get("Authorization"))
        g.caller = caller
        now = datetime.now(timezone.utc)
        quota = gateway.consume(caller, now)
        g.quota = quota
        if quota.exceeded:
            response, status = _error(
                429,
                "Too Many Requests",
                f"You have exceeded the daily limit of {quota.limit} requests.",
            )
            response.headers.update(quota.headers(now))
            return response, status
        return None

    @api.after_request
    def finish(response: Response) -> Response:
        quota = g.get("quota")
        if quota is not None:
            for header, value in quota.headers(datetime.now(timezone.utc)).items():
                response.headers.setdefault(header, value)

        caller = g.get("caller")
        started = g.get("started", time.monotonic())
        gateway.audit(
            {
                "userId": caller.user_id if caller else "anonymous",
                "endpoint": request.full_path.rstrip("?"),
                "method": request.method,
                "statusCode": response.status_code,
                "duration": int((time.monotonic() - started) * 1000),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "ip": request.remote_addr or "",
                "userAgent": request.headers.get("User-Agent", ""),
            }
        )
        return response

    # ---------- Error handlers ----------

    @app.errorhandler(AuthError)
    def handle_auth_error(exc: AuthError):
        return _error(exc.status, "Unauthorized" if exc.status == 401 else "Forbidden", exc.message)

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        return _error(400, "Validation Error", exc.message, details=exc.details)

    @app.errorhandler(StoreError)
    def handle_store_error(exc: StoreError):
        logger.error("Store failure on %s: %s", request.path, exc)
        return _error(500, "Internal Server Error", "The data store is unavailable")

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return _error(exc.code or 500, exc.name, exc.description or exc.name)
        logger.exception("Unhandled error on %s: %s", request.path, exc)
        return _error(500, "Internal Server Error", "An unexpected error occurred")

    # ---------- Routes ----------

    @app.get("/")
    def root() -> Any:
        """Simple root to avoid 404 on GET /"""
        return "ok", 200

    @app.get("/healthz")
    def healthcheck() -> Any:
        started = time.monotonic()
        checks = {}
        try:
            store.ping()
            checks["store"] = {"status": "healthy", "latency": int((time.monotonic() - started) * 1000)}
        except StoreError as exc:
            checks["store"] = {"status": "unhealthy", "error": str(exc)}

        healthy = all(check["status"] == "healthy" for check in checks.values())
        body = {
            "status": "ok" if healthy else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "syncRunning": orchestrator.running,
            "checks": checks,
        }
        return jsonify(body), 200 if healthy else 503

    @api.get("/businesses/search")
    def search() -> Any:
        name = parse_term(request.args, "name", "Search term")
        page, limit = parse_pagination(request.args)
        return jsonify(engine.search_by_name(name, page, limit))

    @api.get("/businesses/category")
    def by_category() -> Any:
        category = parse_term(request.args, "type", "Category type")
        page, limit = parse_pagination(request.args)
        return jsonify(engine.search_by_category(category, page, limit))

    @api.get("/businesses/city")
    def by_city() -> Any:
        city = parse_term(request.args, "name", "City name")
        page, limit = parse_pagination(request.args)
        return jsonify(engine.search_by_city(city, page, limit))

    @api.get("/businesses/nearby")
    def nearby() -> Any:
        lat = parse_float(request.args, "lat", minimum=-90.0, maximum=90.0)
        lng = parse_float(request.args, "lng", minimum=-180.0, maximum=180.0)
        radius = parse_float(request.args, "radius", default=DEFAULT_RADIUS_KM, maximum=MAX_RADIUS_KM)
        limit = min(parse_int(request.args, "limit", DEFAULT_LIMIT), MAX_LIMIT)
        return jsonify(engine.nearby(lat, lng, radius, limit))

    @api.get("/businesses/<business_id>")
    def get_by_id(business_id: str) -> Any:
        business = engine.get_by_id(parse_business_id(business_id))
        if business is None:
            return _error(404, "Not Found", "Business not found")
        return jsonify(business)

    @api.get("/stats")
    def stats() -> Any:
        return jsonify(engine.stats())

    @api.get("/export")
    def export() -> Any:
        fmt = parse_choice(request.args, "format", ("json", "csv"), "json")
        limit = parse_int(request.args, "limit", EXPORT_MAX_ROWS, maximum=EXPORT_MAX_ROWS)
        rows = engine.export(
            province=request.args.get("province"),
            city=request.args.get("city"),
            category=request.args.get("category"),
            limit=limit,
        )
        if fmt == "json":
            return jsonify({"data": rows, "count": len(rows)})

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
        return Response(
            buffer.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=businesses.csv"},
        )

    @api.post("/sync")
    def trigger_sync() -> Any:
        caller = g.caller
        if not caller.is_admin:
            return _error(403, "Forbidden", "You do not have permission to perform this action.")

        logger.info("Manual data sync triggered by user: %s", caller.user_id)
        try:
            result = orchestrator.sync_all(trigger="manual")
        except SyncInProgressError as exc:
            return _error(409, "Conflict", str(exc))
        except (BatchCommitError, StoreError) as exc:
            logger.error("Manual sync failed: %s", exc)
            return _error(500, "Internal Server Error", str(exc))

        return jsonify(
            {"success": True, "message": "Data sync completed successfully.", "result": result.as_dict()}
        )

    app.register_blueprint(api)
    return app


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    logger.info("[BOOT] Binding on 0.0.0.0:%d", settings.port)

    app = create_app(open_store(settings), settings)
    app.run(host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
