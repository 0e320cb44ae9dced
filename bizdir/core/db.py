"""PostgreSQL-backed document store (JSONB documents keyed by collection and id)."""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import extras, pool

from bizdir.core.errors import ConfigError, StoreError
from bizdir.core.store import DocumentStore, Document, Filter, WriteOp, range_field

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    PRIMARY KEY (collection, id)
);
CREATE INDEX IF NOT EXISTS documents_business_search_name
    ON documents ((data->>'search_name') COLLATE "C") WHERE collection = 'businesses';
CREATE INDEX IF NOT EXISTS documents_business_search_city
    ON documents ((data->>'search_city')) WHERE collection = 'businesses';
CREATE INDEX IF NOT EXISTS documents_business_search_category
    ON documents ((data->>'search_category')) WHERE collection = 'businesses';
CREATE INDEX IF NOT EXISTS documents_business_province
    ON documents ((data->>'province')) WHERE collection = 'businesses';
CREATE INDEX IF NOT EXISTS documents_business_latitude
    ON documents (((data->>'latitude')::double precision)) WHERE collection = 'businesses';
CREATE INDEX IF NOT EXISTS documents_api_logs_timestamp
    ON documents ((data->>'timestamp') COLLATE "C") WHERE collection = 'api_logs';
"""

_UPSERT_MERGE = """
INSERT INTO documents (collection, id, data)
VALUES (%(collection)s, %(id)s, %(data)s)
ON CONFLICT (collection, id) DO UPDATE SET
    data = documents.data || EXCLUDED.data;
"""

_UPSERT_REPLACE = """
INSERT INTO documents (collection, id, data)
VALUES (%(collection)s, %(id)s, %(data)s)
ON CONFLICT (collection, id) DO UPDATE SET
    data = EXCLUDED.data;
"""

_DELETE = "DELETE FROM documents WHERE collection = %(collection)s AND id = %(id)s;"

_INCREMENT = """
INSERT INTO documents (collection, id, data)
VALUES (%(collection)s, %(id)s, jsonb_build_object(%(field)s, %(by)s::bigint))
ON CONFLICT (collection, id) DO UPDATE SET
    data = documents.data || jsonb_build_object(
        %(field)s, COALESCE((documents.data->>%(field)s)::bigint, 0) + %(by)s
    )
RETURNING (data->>%(field)s)::bigint;
"""


def _field_expr(value: Any) -> Tuple[str, str]:
    """SQL expression and cast for comparing a JSONB field with ``value``."""
    if isinstance(value, bool):
        return "(data->>%s)::boolean", ""
    if isinstance(value, (int, float)):
        return "(data->>%s)::double precision", ""
    return "(data->>%s)", ' COLLATE "C"'


def build_where(collection: str, filters: Sequence[Filter]) -> Tuple[str, List[Any]]:
    clauses = ["collection = %s"]
    params: List[Any] = [collection]
    for flt in filters:
        expr, collate = _field_expr(flt.value)
        op = "=" if flt.op == "==" else flt.op
        clauses.append(f"{expr}{collate} {op} %s")
        params.extend([flt.field, flt.value])
    return " AND ".join(clauses), params


class PostgresDocumentStore(DocumentStore):
    """DocumentStore over a single ``documents`` table."""

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 5) -> None:
        if not dsn:
            raise ConfigError("DATABASE_URL is required for database connections")
        self._pool = pool.ThreadedConnectionPool(minconn, maxconn, dsn=dsn, connect_timeout=10)
        logger.info("Database connection pool initialised")

    @contextmanager
    def connection(self):
        """Context manager yielding a pooled connection."""
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    def _fetch(self, sql: str, params: Any) -> List[Tuple[Any, ...]]:
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    rows = cur.fetchall()
                conn.commit()
                return rows
        except psycopg2.Error as exc:
            raise StoreError(f"query failed: {exc}") from exc

    def ensure_schema(self) -> None:
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(_SCHEMA)
                conn.commit()
        except psycopg2.Error as exc:
            raise StoreError(f"schema setup failed: {exc}") from exc

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        rows = self._fetch(
            "SELECT id, data FROM documents WHERE collection = %s AND id = %s",
            [collection, doc_id],
        )
        if not rows:
            return None
        return Document(rows[0][0], rows[0][1])

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Document]:
        where, params = build_where(collection, filters)
        order_field = order_by or range_field(filters)
        if order_field:
            sample = next((flt.value for flt in filters if flt.field == order_field), "")
            expr, collate = _field_expr(sample)
            where += " AND data ? %s"
            params.append(order_field)
            order = f"{expr}{collate}, id"
            params.append(order_field)
        else:
            order = "id"
        sql = f"SELECT id, data FROM documents WHERE {where} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        if offset:
            sql += " OFFSET %s"
            params.append(offset)
        return [Document(doc_id, data) for doc_id, data in self._fetch(sql, params)]

    def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        where, params = build_where(collection, filters)
        rows = self._fetch(f"SELECT count(*) FROM documents WHERE {where}", params)
        return int(rows[0][0])

    def stream(self, collection: str) -> Iterator[Document]:
        try:
            with self.connection() as conn:
                with conn.cursor(name=f"stream_{uuid.uuid4().hex}") as cur:
                    cur.itersize = 2000
                    cur.execute(
                        "SELECT id, data FROM documents WHERE collection = %s ORDER BY id",
                        [collection],
                    )
                    for doc_id, data in cur:
                        yield Document(doc_id, data)
                conn.commit()
        except psycopg2.Error as exc:
            raise StoreError(f"stream failed: {exc}") from exc

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self._apply((WriteOp("set", collection, doc_id, data, merge=False),))
        return doc_id

    def increment(self, collection: str, doc_id: str, field_name: str, by: int = 1) -> int:
        rows = self._fetch(
            _INCREMENT,
            {"collection": collection, "id": doc_id, "field": field_name, "by": by},
        )
        return int(rows[0][0])

    def ping(self) -> None:
        self._fetch("SELECT 1", [])

    def _rollback(self, conn) -> None:
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            logger.warning("Rollback failed: %s", exc)

    def _apply(self, ops: Tuple[WriteOp, ...]) -> None:
        try:
            with self.connection() as conn:
                try:
                    with conn.cursor() as cur:
                        for op in ops:
                            params = {"collection": op.collection, "id": op.doc_id}
                            if op.kind == "delete":
                                cur.execute(_DELETE, params)
                                continue
                            params["data"] = extras.Json(op.data)
                            cur.execute(_UPSERT_MERGE if op.merge else _UPSERT_REPLACE, params)
                    conn.commit()
                except psycopg2.Error:
                    self._rollback(conn)
                    raise
        except psycopg2.Error as exc:
            # Includes getconn() failures: unreachable server, exhausted pool.
            raise StoreError(f"batch commit failed: {exc}") from exc
        logger.debug("Committed %d write operations", len(ops))
