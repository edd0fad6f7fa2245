"""crmguard audit package.

Re-exports the public API for ergonomic imports:

    from crmguard.audit import AuditEntry, AuditBackend, AuditFilters

Layout:
    models.py           — AuditEntry, AuditFilters, well-known action names
    protocol.py         — AuditBackend Protocol + NullAuditBackend stub
    sqlite_backend.py   — LocalSQLiteBackend (aiosqlite, WAL mode, PRAGMA version guard)
    supabase_backend.py — SupabaseBackend (async client, 5s timeout, exception swallowing)
    feed.py             — LocalChangeFeed, SupabaseChangeFeed (push notifications of inserts)
"""

from crmguard.audit.feed import ChangeFeed, LocalChangeFeed, SupabaseChangeFeed
from crmguard.audit.models import (
    ACTION_REVEAL_RATE_LIMITED,
    ACTION_SECURITY_ALERT_SENT,
    AuditEntry,
    AuditFilters,
)
from crmguard.audit.protocol import AuditBackend, NullAuditBackend

__all__ = [
    # Actions
    "ACTION_REVEAL_RATE_LIMITED",
    "ACTION_SECURITY_ALERT_SENT",
    # Dataclasses
    "AuditEntry",
    "AuditFilters",
    # Protocol + implementations
    "AuditBackend",
    "NullAuditBackend",
    # Change feeds
    "ChangeFeed",
    "LocalChangeFeed",
    "SupabaseChangeFeed",
]
