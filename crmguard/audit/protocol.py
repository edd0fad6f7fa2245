"""AuditBackend Protocol + NullAuditBackend.

AuditEntry and AuditFilters are defined in crmguard/audit/models.py.
This module defines the pluggable append-only store interface.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from crmguard.audit.models import AuditEntry, AuditFilters
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)


# ─── AuditBackend Protocol ────────────────────────────────────────────────────


@runtime_checkable
class AuditBackend(Protocol):
    """Pluggable, append-only audit store.

    Implementations: LocalSQLiteBackend (default), SupabaseBackend.
    Selection via create_data_boundary() (crmguard/boundary.py).

    log_event() never raises: it returns True when the entry was persisted
    and False otherwise, so callers can log the failure and move on.
    There is deliberately no update or delete operation.
    """

    async def log_event(self, entry: AuditEntry) -> bool:
        """Append an entry. Must NEVER raise."""
        ...

    async def query_events(self, filters: AuditFilters) -> list[AuditEntry]:
        """Return matching entries sorted by created_at DESC (newest first)."""
        ...

    async def count_events(self, filters: AuditFilters) -> int:
        """Count matching entries, ignoring limit/offset."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is operational. Must not raise."""
        ...

    async def close(self) -> None:
        """Release connections. Called during graceful shutdown."""
        ...


# ─── NullAuditBackend ────────────────────────────────────────────────────────


class NullAuditBackend:
    """No-op AuditBackend used in tests and as a base for mocks."""

    async def log_event(self, entry: AuditEntry) -> bool:
        logger.debug("NullAuditBackend.log_event (stub)", action=entry.action)
        return True

    async def query_events(self, filters: AuditFilters) -> list[AuditEntry]:
        return []

    async def count_events(self, filters: AuditFilters) -> int:
        return 0

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        logger.debug("NullAuditBackend.close (stub)")


assert isinstance(NullAuditBackend(), AuditBackend), (
    "NullAuditBackend does not satisfy AuditBackend protocol — implementation error"
)
