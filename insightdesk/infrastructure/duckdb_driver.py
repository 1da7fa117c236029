"""Document storage for member data on top of DuckDB.

Every collection is a table keyed by ``(owner_id, workspace_id, dashboard_id,
id)`` with the document itself kept as a JSON ``body``. Filters may only name
the key fields, which keeps every query an indexed lookup and makes the owner
scope explicit. Statements are serialised on a single connection behind a
lock; async callers go through ``asyncio.to_thread``.
"""
from __future__ import annotations

import json
import math
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

import duckdb

from insightdesk.core.ids import utc_now
from insightdesk.core.logging import get_logger
from insightdesk.domain.errors import BackendUnavailableError, DuplicateIdError, NotFoundError

LOGGER = get_logger(__name__)

KEY_COLUMNS = {
    "ownerId": "owner_id",
    "workspaceId": "workspace_id",
    "dashboardId": "dashboard_id",
    "id": "id",
}
COLLECTIONS = ("workspaces", "dashboards", "tiles", "notes", "contacts")

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS document_seq START 1",
    *[
        f"""
        CREATE TABLE IF NOT EXISTS {collection} (
            owner_id VARCHAR NOT NULL,
            workspace_id VARCHAR NOT NULL,
            dashboard_id VARCHAR NOT NULL,
            id VARCHAR NOT NULL,
            seq BIGINT DEFAULT nextval('document_seq'),
            body VARCHAR NOT NULL,
            PRIMARY KEY (owner_id, workspace_id, dashboard_id, id)
        )
        """
        for collection in COLLECTIONS
    ],
    """
    CREATE TABLE IF NOT EXISTS quotas (
        identity_id VARCHAR NOT NULL,
        action VARCHAR NOT NULL,
        used BIGINT NOT NULL DEFAULT 0,
        updated_at VARCHAR,
        PRIMARY KEY (identity_id, action)
    )
    """,
]


def _table(collection: str) -> str:
    if collection not in COLLECTIONS:
        raise ValueError(f"unknown collection {collection!r}")
    return collection


def _kind(collection: str) -> str:
    return collection[:-1]


def _where(filters: Mapping[str, Any]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for field, value in filters.items():
        column = KEY_COLUMNS.get(field)
        if column is None:
            raise ValueError(f"cannot filter on non-key field {field!r}")
        clauses.append(f"{column} = ?")
        params.append(value)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _key_values(document: Mapping[str, Any]) -> list[str]:
    return [str(document.get(field) or "") for field in KEY_COLUMNS]


def _dump(document: Mapping[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False)


class DuckDBDocumentDriver:
    def __init__(self, database: str = ":memory:") -> None:
        self._database = database
        self._lock = threading.Lock()
        self._conn: duckdb.DuckDBPyConnection | None = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            try:
                if self._database != ":memory:":
                    Path(self._database).expanduser().parent.mkdir(parents=True, exist_ok=True)
                conn = duckdb.connect(self._database)
                for statement in _SCHEMA:
                    conn.execute(statement)
            except (duckdb.Error, OSError) as exc:
                LOGGER.error("Unable to open durable store %s: %s", self._database, exc)
                raise BackendUnavailableError(f"Durable store unavailable: {exc}") from exc
            self._conn = conn
        return self._conn

    @contextmanager
    def _session(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            conn = self._connection()
            try:
                yield conn
            except duckdb.Error as exc:
                LOGGER.error("Durable store statement failed: %s", exc)
                raise BackendUnavailableError(f"Durable store error: {exc}") from exc

    @contextmanager
    def _transaction(self, conn: duckdb.DuckDBPyConnection) -> Iterator[None]:
        conn.begin()
        try:
            yield
        except Exception:
            conn.rollback()
            raise
        conn.commit()

    def ping(self) -> None:
        with self._session() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def reset(self) -> None:
        """Delete every document and counter."""

        with self._session() as conn:
            for collection in COLLECTIONS:
                conn.execute(f"DELETE FROM {collection}")
            conn.execute("DELETE FROM quotas")

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def find_one(self, collection: str, filters: Mapping[str, Any]) -> dict[str, Any] | None:
        where, params = _where(filters)
        with self._session() as conn:
            row = conn.execute(
                f"SELECT body FROM {_table(collection)}{where} ORDER BY seq LIMIT 1", params
            ).fetchone()
        return json.loads(row[0]) if row else None

    def find(self, collection: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        where, params = _where(filters)
        with self._session() as conn:
            rows = conn.execute(f"SELECT body FROM {_table(collection)}{where} ORDER BY seq", params).fetchall()
        return [json.loads(row[0]) for row in rows]

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        table = _table(collection)
        with self._session() as conn:
            try:
                conn.execute(
                    f"INSERT INTO {table} (owner_id, workspace_id, dashboard_id, id, body) VALUES (?, ?, ?, ?, ?)",
                    [*_key_values(document), _dump(document)],
                )
            except duckdb.ConstraintException as exc:
                raise DuplicateIdError(_kind(collection), str(document.get("id"))) from exc
        return dict(document)

    def _update_row(
        self, conn: duckdb.DuckDBPyConnection, table: str, filters: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        where, params = _where(filters)
        row = conn.execute(f"SELECT seq, body FROM {table}{where} ORDER BY seq LIMIT 1", params).fetchone()
        if row is None:
            return None
        document = json.loads(row[1])
        document.update({field: value for field, value in changes.items() if field not in KEY_COLUMNS})
        conn.execute(f"UPDATE {table} SET body = ? WHERE seq = ?", [_dump(document), row[0]])
        return document

    def update_one(
        self, collection: str, filters: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        table = _table(collection)
        with self._session() as conn:
            return self._update_row(conn, table, filters, changes)

    def update_many(
        self, collection: str, filters: Mapping[str, Any], changes_by_id: Mapping[str, Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        """Apply per-document changes in one transaction; any miss aborts all of them."""

        table = _table(collection)
        updated: list[dict[str, Any]] = []
        with self._session() as conn:
            with self._transaction(conn):
                for document_id, changes in changes_by_id.items():
                    document = self._update_row(conn, table, {**filters, "id": document_id}, changes)
                    if document is None:
                        raise NotFoundError(_kind(collection), document_id)
                    updated.append(document)
        return updated

    def delete_one(self, collection: str, filters: Mapping[str, Any]) -> bool:
        where, params = _where(filters)
        table = _table(collection)
        with self._session() as conn:
            row = conn.execute(f"SELECT seq FROM {table}{where} ORDER BY seq LIMIT 1", params).fetchone()
            if row is None:
                return False
            conn.execute(f"DELETE FROM {table} WHERE seq = ?", [row[0]])
        return True

    def delete_many(self, collection: str, filters: Mapping[str, Any]) -> int:
        where, params = _where(filters)
        table = _table(collection)
        with self._session() as conn:
            count = conn.execute(f"SELECT COUNT(*) FROM {table}{where}", params).fetchone()[0]
            if count:
                conn.execute(f"DELETE FROM {table}{where}", params)
        return int(count)

    def rename_workspace(self, owner_id: str, old_id: str, new_id: str) -> None:
        """Rewrite the id of a workspace and the keys of everything below it."""

        with self._session() as conn:
            with self._transaction(conn):
                clash = conn.execute(
                    "SELECT 1 FROM workspaces WHERE owner_id = ? AND id = ?", [owner_id, new_id]
                ).fetchone()
                if clash:
                    raise DuplicateIdError("workspace", new_id)
                row = conn.execute(
                    "SELECT seq, body FROM workspaces WHERE owner_id = ? AND id = ?", [owner_id, old_id]
                ).fetchone()
                if row is None:
                    raise NotFoundError("workspace", old_id)
                document = json.loads(row[1])
                document["id"] = new_id
                conn.execute("DELETE FROM workspaces WHERE seq = ?", [row[0]])
                conn.execute(
                    "INSERT INTO workspaces (owner_id, workspace_id, dashboard_id, id, seq, body) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    [owner_id, "", "", new_id, row[0], _dump(document)],
                )
                for collection in COLLECTIONS[1:]:
                    rows = conn.execute(
                        f"SELECT dashboard_id, id, seq, body FROM {collection} "
                        "WHERE owner_id = ? AND workspace_id = ? ORDER BY seq",
                        [owner_id, old_id],
                    ).fetchall()
                    if not rows:
                        continue
                    conn.execute(
                        f"DELETE FROM {collection} WHERE owner_id = ? AND workspace_id = ?", [owner_id, old_id]
                    )
                    for dashboard_id, document_id, seq, body in rows:
                        child = json.loads(body)
                        child["workspaceId"] = new_id
                        conn.execute(
                            f"INSERT INTO {collection} (owner_id, workspace_id, dashboard_id, id, seq, body) "
                            "VALUES (?, ?, ?, ?, ?, ?)",
                            [owner_id, new_id, dashboard_id, document_id, seq, _dump(child)],
                        )
        LOGGER.info("Reassigned workspace %s to %s for owner %s", old_id, new_id, owner_id)

    # ------------------------------------------------------------------
    # Quota counters
    # ------------------------------------------------------------------
    def get_counters(self, identity_id: str) -> dict[str, int]:
        with self._session() as conn:
            rows = conn.execute("SELECT action, used FROM quotas WHERE identity_id = ?", [identity_id]).fetchall()
        return {action: int(used) for action, used in rows}

    def increment_with_ceiling(self, identity_id: str, action: str, ceiling: float) -> tuple[bool, int]:
        """Increment the counter unless it already reached ``ceiling``.

        Returns ``(allowed, used)`` where ``used`` is the counter after the
        call.
        """

        now = utc_now()
        with self._session() as conn:
            conn.execute(
                "INSERT INTO quotas (identity_id, action, used, updated_at) VALUES (?, ?, 0, ?) ON CONFLICT DO NOTHING",
                [identity_id, action, now],
            )
            if math.isinf(ceiling):
                row = conn.execute(
                    "UPDATE quotas SET used = used + 1, updated_at = ? "
                    "WHERE identity_id = ? AND action = ? RETURNING used",
                    [now, identity_id, action],
                ).fetchone()
            else:
                row = conn.execute(
                    "UPDATE quotas SET used = used + 1, updated_at = ? "
                    "WHERE identity_id = ? AND action = ? AND used < ? RETURNING used",
                    [now, identity_id, action, int(ceiling)],
                ).fetchone()
            if row is not None:
                return True, int(row[0])
            current = conn.execute(
                "SELECT used FROM quotas WHERE identity_id = ? AND action = ?", [identity_id, action]
            ).fetchone()
        return False, int(current[0]) if current else 0

    def decrement_floor(self, identity_id: str, action: str) -> int:
        with self._session() as conn:
            row = conn.execute(
                "UPDATE quotas SET used = GREATEST(used - 1, 0), updated_at = ? "
                "WHERE identity_id = ? AND action = ? RETURNING used",
                [utc_now(), identity_id, action],
            ).fetchone()
        return int(row[0]) if row else 0

    def reset_counters(self, identity_id: str) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE quotas SET used = 0, updated_at = ? WHERE identity_id = ?", [utc_now(), identity_id]
            )
