"""SupabaseBackend — async Supabase activity-log backend.

All methods are async with a 5-second timeout (asyncio.wait_for).
ALL exceptions are swallowed and logged — the security components keep
running when the data boundary is unreachable.
The supabase library is an optional dependency — if not installed, all
methods log a warning and return empty/False/0 values.

The same AsyncClient is shared with the lead store, the identity directory,
and the realtime change feed (see crmguard/boundary.py).

Install: pip install crmguard[supabase]

Environment:
  SUPABASE_URL  — required for Supabase selection in boundary.py
  SUPABASE_KEY  — required (service role key, not anon key)
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from crmguard.audit.models import AuditEntry, AuditFilters, entry_from_row
from crmguard.constants import SUPABASE_TIMEOUT_S
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

try:
    from supabase import create_async_client  # type: ignore[import-untyped]
    _SUPABASE_AVAILABLE = True
except ImportError:
    _SUPABASE_AVAILABLE = False
    logger.warning(
        "supabase_library_not_installed",
        message="supabase package not installed — SupabaseBackend will be a no-op. "
                "Install with: pip install crmguard[supabase]",
    )

_TABLE_NAME = "activity_logs"


class SupabaseBackend:
    """Async Supabase activity log (PostgREST).

    Usage:
        backend = SupabaseBackend(url="https://...", key="service-role-key")
        await backend.initialize()
        ok = await backend.log_event(entry)
        rows = await backend.query_events(AuditFilters(action_prefix="revealed_"))
        await backend.close()
    """

    def __init__(
        self,
        url: str,
        key: str,
        table_name: str = _TABLE_NAME,
        timeout_s: float = SUPABASE_TIMEOUT_S,
    ) -> None:
        self._url = url
        self._key = key
        self._table_name = table_name
        self._timeout_s = timeout_s
        self._client: Optional[Any] = None

    @property
    def client(self) -> Optional[Any]:
        """The shared AsyncClient, or None when unavailable."""
        return self._client

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the async Supabase client. Failures leave the backend a no-op."""
        if not _SUPABASE_AVAILABLE:
            logger.warning(
                "supabase_backend_noop",
                reason="supabase library not installed",
            )
            return

        try:
            self._client = await asyncio.wait_for(
                create_async_client(self._url, self._key),
                timeout=self._timeout_s,
            )
            logger.info(
                "supabase_backend_initialized",
                table=self._table_name,
                timeout_s=self._timeout_s,
            )
        except Exception as exc:
            logger.error(
                "supabase_backend_init_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._client = None

    async def close(self) -> None:
        self._client = None
        logger.debug("supabase_backend_closed")

    # ── AuditBackend Protocol Methods ─────────────────────────────────────────

    async def log_event(self, entry: AuditEntry) -> bool:
        if self._client is None:
            return False

        try:
            payload = entry.to_dict()
            await asyncio.wait_for(
                self._client.table(self._table_name).insert(payload).execute(),
                timeout=self._timeout_s,
            )
            return True
        except Exception as exc:
            logger.error(
                "supabase_log_event_failed",
                action=entry.action,
                entry_id=entry.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    async def query_events(self, filters: AuditFilters) -> list[AuditEntry]:
        """Returns [] on timeout, error, or if client is not initialized."""
        if self._client is None:
            return []

        try:
            query = (
                self._client.table(self._table_name)
                .select("*")
                .order("created_at", desc=True)
            )
            query = _apply_filters_to_query(query, filters)
            query = query.range(filters.offset, filters.offset + filters.limit - 1)

            response = await asyncio.wait_for(query.execute(), timeout=self._timeout_s)

            if not response.data:
                return []
            return [entry_from_row(row) for row in response.data]

        except Exception as exc:
            logger.error(
                "supabase_query_events_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return []

    async def count_events(self, filters: AuditFilters) -> int:
        if self._client is None:
            return 0

        try:
            query = self._client.table(self._table_name).select("id", count="exact")
            query = _apply_filters_to_query(query, filters)
            response = await asyncio.wait_for(query.execute(), timeout=self._timeout_s)
            return response.count if response.count is not None else 0

        except Exception as exc:
            logger.error(
                "supabase_count_events_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0

    async def health_check(self) -> bool:
        if self._client is None:
            return False

        try:
            response = await asyncio.wait_for(
                self._client.table(self._table_name).select("id").limit(1).execute(),
                timeout=self._timeout_s,
            )
            return response is not None
        except Exception as exc:
            logger.error(
                "supabase_health_check_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False


def _apply_filters_to_query(query: Any, filters: AuditFilters) -> Any:
    """Apply AuditFilters to a postgrest query builder.

    action_prefix takes precedence over action when both are set.
    """
    if filters.action_prefix is not None:
        query = query.like("action", f"{filters.action_prefix}%")
    elif filters.action is not None:
        query = query.eq("action", filters.action)

    if filters.user_id is not None:
        query = query.eq("user_id", filters.user_id)

    if filters.entity_type is not None:
        query = query.eq("entity_type", filters.entity_type)

    if filters.since is not None:
        query = query.gte("created_at", filters.since.isoformat())

    if filters.until is not None:
        query = query.lte("created_at", filters.until.isoformat())

    return query
