"""LocalSQLiteBackend — aiosqlite-based append-only activity log.

Uses aiosqlite exclusively; the synchronous sqlite3 module would block the
event loop that also drives the security timers.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent reads while writing)
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Idempotent writes: INSERT OR IGNORE on the ULID primary key
  - No UPDATE/DELETE statements anywhere (append-only)
  - Optional LocalChangeFeed: every successful insert is published
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import aiosqlite

from crmguard.audit.feed import LocalChangeFeed
from crmguard.audit.models import AuditEntry, AuditFilters, entry_from_row
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS activity_logs (
    id           TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL,
    entity_type  TEXT NOT NULL,
    entity_id    TEXT,
    action       TEXT NOT NULL,
    details      TEXT,
    created_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_created_at
    ON activity_logs(created_at DESC);

CREATE INDEX IF NOT EXISTS idx_activity_user_action
    ON activity_logs(user_id, action, created_at DESC);
"""

_SCHEMA_VERSION = 1


class LocalSQLiteBackend:
    """Async SQLite activity log.

    Usage:
        backend = LocalSQLiteBackend(db_path, feed=LocalChangeFeed())
        await backend.initialize()   # raises RuntimeError on schema version mismatch
        ok = await backend.log_event(entry)
        recent = await backend.query_events(AuditFilters(action_prefix="revealed_"))
        await backend.close()
    """

    def __init__(
        self,
        db_path: str = "~/.crmguard/audit.db",
        feed: Optional[LocalChangeFeed] = None,
    ) -> None:
        self._db_path: str = os.path.expanduser(db_path) if db_path != ":memory:" else db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._feed = feed

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, and create/verify schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "audit_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "audit_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported audit database schema version: {current_version}. "
                f"Delete {self._db_path} to reset or point audit.path elsewhere."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("audit_db_closed", db_path=self._db_path)

    # ── AuditBackend Protocol Methods ─────────────────────────────────────────

    async def log_event(self, entry: AuditEntry) -> bool:
        """Append an entry. Catches ALL exceptions and reports them as False."""
        try:
            assert self._db is not None, "Database not initialized — call initialize() first"
            await self._db.execute(
                """INSERT OR IGNORE INTO activity_logs
                   (id, user_id, entity_type, entity_id, action, details, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (
                    entry.id,
                    entry.user_id,
                    entry.entity_type,
                    entry.entity_id,
                    entry.action,
                    json.dumps(entry.details) if entry.details is not None else None,
                    entry.created_at.isoformat(),
                ),
            )
            await self._db.commit()
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action,
                entry_id=entry.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        if self._feed is not None:
            await self._feed.publish(entry)
        return True

    async def query_events(self, filters: AuditFilters) -> list[AuditEntry]:
        """Return matching entries newest first."""
        assert self._db is not None, "Database not initialized"
        sql, params = _build_select_sql(filters, count_only=False)
        cursor = await self._db.execute(sql, params)
        rows = await cursor.fetchall()
        return [entry_from_row(row) for row in rows]

    async def count_events(self, filters: AuditFilters) -> int:
        assert self._db is not None, "Database not initialized"
        sql, params = _build_select_sql(filters, count_only=True)
        cursor = await self._db.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def health_check(self) -> bool:
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False


# ─── SQL Builder Helper ───────────────────────────────────────────────────────


def _build_select_sql(
    filters: AuditFilters, *, count_only: bool
) -> tuple[str, list[Any]]:
    """Build a parameterized SELECT from AuditFilters.

    created_at is stored as an ISO 8601 UTC string, so lexical comparison
    matches chronological order as long as callers pass aware UTC datetimes.
    """
    conditions: list[str] = []
    params: list[Any] = []

    if filters.action_prefix is not None:
        conditions.append("action LIKE ? ESCAPE '\\'")
        escaped = (
            filters.action_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        params.append(f"{escaped}%")
    elif filters.action is not None:
        conditions.append("action = ?")
        params.append(filters.action)

    if filters.user_id is not None:
        conditions.append("user_id = ?")
        params.append(filters.user_id)

    if filters.entity_type is not None:
        conditions.append("entity_type = ?")
        params.append(filters.entity_type)

    if filters.since is not None:
        conditions.append("created_at >= ?")
        params.append(filters.since.isoformat())

    if filters.until is not None:
        conditions.append("created_at <= ?")
        params.append(filters.until.isoformat())

    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

    if count_only:
        return f"SELECT COUNT(*) FROM activity_logs{where}", params

    sql = f"SELECT * FROM activity_logs{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([filters.limit, filters.offset])
    return sql, params
