# Vidi Server: Dashboard Store
#
# SQLite-backed persistence for dashboard documents and their metadata.
# One table keyed by dashboard id; grouping fields, timestamps and the
# permanence flag are plain columns so listing never decodes a document.
#
# Writes are serialized by an in-process lock and run inside
# BEGIN IMMEDIATE transactions. Reads take no lock: WAL mode gives them a
# consistent snapshot, so a concurrent replace is seen fully old or fully
# new.

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Union

from ..core.db import connect as db_connect
from ..core.db import immediate_transaction
from ..errors import ConflictError, NotFoundError, StorageError
from ..models.dashboard import (
    BuildStatus,
    DashboardMeta,
    DashboardRecord,
    DashboardSummary,
    ListQuery,
    MetaUpdate,
    format_timestamp,
    parse_timestamp,
    plot_count,
    utcnow,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("dashboards.db")

_SUMMARY_COLUMNS = (
    "id, xp_name, user, tags, permanent, ttl, created_at, updated_at, "
    "last_accessed_at, plot_count, build_status"
)


class DashboardStore:
    """Thread-safe SQLite store for dashboards.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Union[str, Path] = _DEFAULT_DB_PATH):
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """Open a connection and translate sqlite errors to StorageError."""
        try:
            conn = db_connect(self._db_path, row_factory=True)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open {self._db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"Database error: {exc}") from exc
        finally:
            conn.close()

    def _init_database(self):
        with self._lock, self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS dashboards (
                    id TEXT PRIMARY KEY,
                    xp_name TEXT,
                    user TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    permanent INTEGER NOT NULL DEFAULT 0,
                    ttl INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_accessed_at TEXT NOT NULL,
                    dashboard_json TEXT NOT NULL
                )
            """)
            # Ids of deleted dashboards; an id is never handed out twice.
            conn.execute("""
                CREATE TABLE IF NOT EXISTS retired_dashboard_ids (
                    id TEXT PRIMARY KEY,
                    retired_at TEXT NOT NULL
                )
            """)
            for column in ("xp_name", "user", "permanent", "created_at",
                           "updated_at", "last_accessed_at"):
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_dashboards_{column} "
                    f"ON dashboards({column})"
                )

            # Migration: build status columns on databases created before them
            for ddl in (
                "ALTER TABLE dashboards ADD COLUMN build_status TEXT NOT NULL DEFAULT 'pending'",
                "ALTER TABLE dashboards ADD COLUMN build_error TEXT DEFAULT NULL",
            ):
                try:
                    conn.execute(ddl)
                except sqlite3.OperationalError:
                    pass  # Column already exists

            # Migration: precomputed plot count for list summaries
            try:
                conn.execute(
                    "ALTER TABLE dashboards ADD COLUMN plot_count INTEGER NOT NULL DEFAULT -1"
                )
            except sqlite3.OperationalError:
                pass  # Column already exists
            self._backfill_plot_counts(conn)

    def _backfill_plot_counts(self, conn: sqlite3.Connection):
        rows = conn.execute(
            "SELECT id, dashboard_json FROM dashboards WHERE plot_count < 0"
        ).fetchall()
        if not rows:
            return
        with immediate_transaction(conn):
            for row in rows:
                conn.execute(
                    "UPDATE dashboards SET plot_count = ? WHERE id = ?",
                    (plot_count(_load_document(row["dashboard_json"])), row["id"]),
                )
        logger.info("Backfilled plot counts for %d dashboards", len(rows))

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def create(self, record: DashboardRecord) -> DashboardRecord:
        """Persist a fully formed record and return it unchanged.

        Raises:
            ConflictError: the id is in use or belonged to a deleted dashboard.
        """
        meta = record.meta
        with self._lock, self._conn() as conn:
            with immediate_transaction(conn):
                taken = conn.execute(
                    "SELECT 1 FROM dashboards WHERE id = ? "
                    "UNION ALL SELECT 1 FROM retired_dashboard_ids WHERE id = ?",
                    (meta.id, meta.id),
                ).fetchone()
                if taken:
                    raise ConflictError(f"Dashboard id already used: {meta.id}")
                conn.execute(
                    """INSERT INTO dashboards
                       (id, xp_name, user, tags, permanent, ttl, created_at,
                        updated_at, last_accessed_at, dashboard_json, plot_count,
                        build_status, build_error)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        meta.id,
                        meta.xp_name,
                        meta.user,
                        json.dumps(meta.tags),
                        int(meta.permanent),
                        meta.ttl,
                        format_timestamp(meta.created_at),
                        format_timestamp(meta.updated_at),
                        format_timestamp(meta.last_accessed_at),
                        json.dumps(record.document),
                        plot_count(record.document),
                        meta.build_status.value,
                        meta.build_error,
                    ),
                )
        return record

    def replace(self, dashboard_id: str, record: DashboardRecord) -> DashboardRecord:
        """Overwrite content and metadata in one statement.

        ``created_at`` is kept from the stored row, ``updated_at`` is set
        to now and the build status goes back to pending.
        """
        now = utcnow()
        meta = record.meta
        with self._lock, self._conn() as conn:
            with immediate_transaction(conn):
                cur = conn.execute(
                    """UPDATE dashboards SET
                           xp_name = ?, user = ?, tags = ?, permanent = ?, ttl = ?,
                           updated_at = ?, last_accessed_at = ?, dashboard_json = ?,
                           plot_count = ?, build_status = ?, build_error = NULL
                       WHERE id = ?""",
                    (
                        meta.xp_name,
                        meta.user,
                        json.dumps(meta.tags),
                        int(meta.permanent),
                        meta.ttl,
                        format_timestamp(now),
                        format_timestamp(max(meta.last_accessed_at, now)),
                        json.dumps(record.document),
                        plot_count(record.document),
                        BuildStatus.PENDING.value,
                        dashboard_id,
                    ),
                )
                if cur.rowcount == 0:
                    raise NotFoundError(dashboard_id)
                row = self._fetch_row(conn, dashboard_id)
        return self._row_to_record(row)

    def update_meta(self, dashboard_id: str, update: MetaUpdate) -> DashboardRecord:
        """Apply a partial metadata update; build status is untouched."""
        with self._lock, self._conn() as conn:
            with immediate_transaction(conn):
                row = self._fetch_row(conn, dashboard_id)
                if row is None:
                    raise NotFoundError(dashboard_id)
                meta = update.apply_to(self._row_to_meta(row))
                conn.execute(
                    """UPDATE dashboards SET
                           xp_name = ?, user = ?, tags = ?, permanent = ?, ttl = ?,
                           updated_at = ?
                       WHERE id = ?""",
                    (
                        meta.xp_name,
                        meta.user,
                        json.dumps(meta.tags),
                        int(meta.permanent),
                        meta.ttl,
                        format_timestamp(meta.updated_at),
                        dashboard_id,
                    ),
                )
                row = self._fetch_row(conn, dashboard_id)
        return self._row_to_record(row)

    def delete(self, dashboard_id: str) -> bool:
        """Delete a dashboard. Returns False if there was nothing to delete."""
        with self._lock, self._conn() as conn:
            with immediate_transaction(conn):
                deleted = self._delete_rows(conn, [dashboard_id])
        return deleted == 1

    def touch(self, dashboard_id: str, now: Optional[datetime] = None):
        """Set ``last_accessed_at`` to now, restarting the TTL window."""
        with self._lock, self._conn() as conn:
            cur = conn.execute(
                "UPDATE dashboards SET last_accessed_at = ? WHERE id = ?",
                (format_timestamp(now or utcnow()), dashboard_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(dashboard_id)

    def update_build_status(
        self,
        dashboard_id: str,
        status: BuildStatus,
        error: Optional[str] = None,
    ):
        """Move the build state machine along one edge.

        Only the status and error columns change; ``updated_at`` does not.

        Raises:
            NotFoundError: dashboard absent.
            ConflictError: the transition is not an edge of the state machine.
        """
        status = BuildStatus(status)
        if status == BuildStatus.FAILED:
            error = error or "Build failed"
        else:
            error = None

        with self._lock, self._conn() as conn:
            with immediate_transaction(conn):
                row = conn.execute(
                    "SELECT build_status FROM dashboards WHERE id = ?", (dashboard_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(dashboard_id)
                current = BuildStatus(row["build_status"])
                if not current.can_transition_to(status):
                    raise ConflictError(
                        f"Illegal build status transition for {dashboard_id}: "
                        f"{current.value} -> {status.value}"
                    )
                conn.execute(
                    "UPDATE dashboards SET build_status = ?, build_error = ? WHERE id = ?",
                    (status.value, error, dashboard_id),
                )

    def fail_interrupted_builds(self, message: str = "Build interrupted by server restart") -> int:
        """Mark rows left in ``building`` by a previous process as failed."""
        with self._lock, self._conn() as conn:
            cur = conn.execute(
                "UPDATE dashboards SET build_status = ?, build_error = ? WHERE build_status = ?",
                (BuildStatus.FAILED.value, message, BuildStatus.BUILDING.value),
            )
            count = cur.rowcount
        if count:
            logger.warning("Marked %d interrupted builds as failed", count)
        return count

    def purge_expired(
        self,
        excluded_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Delete every expired, non-permanent dashboard not in ``excluded_ids``.

        Candidate selection and deletion happen in one write transaction
        under the store lock, so a touch that completed before this call
        is always seen and a touch issued during it waits for it.

        Returns:
            The ids that were deleted.
        """
        excluded = set(excluded_ids)
        now = now or utcnow()
        with self._lock, self._conn() as conn:
            with immediate_transaction(conn):
                rows = conn.execute(
                    "SELECT id, last_accessed_at, ttl FROM dashboards "
                    "WHERE permanent = 0 AND ttl IS NOT NULL"
                ).fetchall()
                expired = []
                for row in rows:
                    if row["id"] in excluded:
                        continue
                    try:
                        last_accessed = parse_timestamp(row["last_accessed_at"])
                    except ValueError:
                        logger.warning("Unparseable last_accessed_at for %s", row["id"])
                        continue
                    meta_expired = (now - last_accessed).total_seconds() > row["ttl"]
                    if meta_expired:
                        expired.append(row["id"])
                self._delete_rows(conn, expired)
        return expired

    def cleanup_expired(
        self,
        excluded_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> int:
        """Delete expired dashboards not in ``excluded_ids``; returns the count."""
        return len(self.purge_expired(excluded_ids, now=now))

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, dashboard_id: str) -> Optional[DashboardRecord]:
        """Fetch a full record. Does not touch it."""
        with self._conn() as conn:
            row = self._fetch_row(conn, dashboard_id)
        return self._row_to_record(row) if row is not None else None

    def get_document(self, dashboard_id: str) -> Optional[Any]:
        """Fetch only the document of a dashboard."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT dashboard_json FROM dashboards WHERE id = ?", (dashboard_id,)
            ).fetchone()
        return _load_document(row["dashboard_json"]) if row is not None else None

    def exists(self, dashboard_id: str) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM dashboards WHERE id = ?", (dashboard_id,)
            ).fetchone()
        return row is not None

    def list(self, query: Optional[ListQuery] = None) -> List[DashboardSummary]:
        """List summaries matching ``query`` (filters ANDed)."""
        query = query or ListQuery()
        clauses: list = []
        params: list = []

        if query.xp_name is not None:
            clauses.append("xp_name = ?")
            params.append(query.xp_name)
        if query.user is not None:
            clauses.append("user = ?")
            params.append(query.user)
        if query.tag is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(dashboards.tags) WHERE json_each.value = ?)"
            )
            params.append(query.tag)
        if query.permanent is not None:
            clauses.append("permanent = ?")
            params.append(int(query.permanent))

        where = ""
        if clauses:
            where = "WHERE " + " AND ".join(clauses)

        # sort/order were validated against fixed whitelists by ListQuery
        sql = (
            f"SELECT {_SUMMARY_COLUMNS} FROM dashboards {where} "
            f"ORDER BY {query.sort} {query.order.upper()}, id ASC LIMIT ? OFFSET ?"
        )
        params.extend([query.limit, query.offset])

        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_summary(r) for r in rows]

    def count(self) -> int:
        with self._conn() as conn:
            row = conn.execute("SELECT COUNT(*) FROM dashboards").fetchone()
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch_row(conn: sqlite3.Connection, dashboard_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM dashboards WHERE id = ?", (dashboard_id,)
        ).fetchone()

    @staticmethod
    def _delete_rows(conn: sqlite3.Connection, ids: List[str]) -> int:
        deleted = 0
        retired_at = format_timestamp(utcnow())
        for dashboard_id in ids:
            cur = conn.execute("DELETE FROM dashboards WHERE id = ?", (dashboard_id,))
            if cur.rowcount:
                deleted += 1
                conn.execute(
                    "INSERT OR IGNORE INTO retired_dashboard_ids (id, retired_at) VALUES (?, ?)",
                    (dashboard_id, retired_at),
                )
        return deleted

    @staticmethod
    def _row_to_meta(row: sqlite3.Row) -> DashboardMeta:
        permanent = bool(row["permanent"])
        return DashboardMeta(
            id=row["id"],
            xp_name=row["xp_name"],
            user=row["user"],
            tags=_load_tags(row["tags"]),
            permanent=permanent,
            ttl=row["ttl"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            last_accessed_at=parse_timestamp(row["last_accessed_at"]),
            build_status=_load_status(row["build_status"]),
            build_error=row["build_error"],
        )

    @classmethod
    def _row_to_record(cls, row: sqlite3.Row) -> DashboardRecord:
        return DashboardRecord(
            meta=cls._row_to_meta(row),
            document=_load_document(row["dashboard_json"]),
        )

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> DashboardSummary:
        return DashboardSummary(
            id=row["id"],
            xp_name=row["xp_name"],
            user=row["user"],
            tags=_load_tags(row["tags"]),
            permanent=bool(row["permanent"]),
            ttl=row["ttl"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            last_accessed_at=parse_timestamp(row["last_accessed_at"]),
            plot_count=max(row["plot_count"], 0),
            build_status=_load_status(row["build_status"]),
        )


def _load_document(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise StorageError(f"Stored dashboard document is corrupt: {exc}") from exc


def _load_tags(raw: Optional[str]) -> List[str]:
    try:
        tags = json.loads(raw or "[]")
    except (json.JSONDecodeError, TypeError):
        return []
    return [str(t) for t in tags] if isinstance(tags, list) else []


def _load_status(raw: Optional[str]) -> BuildStatus:
    try:
        return BuildStatus(raw)
    except ValueError:
        # Rows written by older builds used "compiling"
        return BuildStatus.BUILDING if raw == "compiling" else BuildStatus.PENDING
