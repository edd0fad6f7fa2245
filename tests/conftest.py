"""Root test configuration for crmguard.

Clears the Supabase / Resend environment so every test runs against the
local data boundary and the logging alert dispatcher unless it opts in.

Provides ``RecordingAuditBackend``: an in-memory activity log that honours
AuditFilters the same way the SQLite backend does, can be told to fail
writes, and can publish to a LocalChangeFeed.
"""

from __future__ import annotations

import asyncio
from typing import Iterator, Optional

import pytest

from crmguard.audit.feed import LocalChangeFeed
from crmguard.audit.models import AuditEntry, AuditFilters


class RecordingAuditBackend:
    """In-memory AuditBackend for unit tests."""

    def __init__(self, feed: Optional[LocalChangeFeed] = None, query_delay_s: float = 0.0) -> None:
        self.entries: list[AuditEntry] = []
        self.fail_writes = False
        self.fail_queries = False
        self.query_calls = 0
        self._feed = feed
        self._query_delay_s = query_delay_s

    async def log_event(self, entry: AuditEntry) -> bool:
        if self.fail_writes:
            return False
        self.entries.append(entry)
        if self._feed is not None:
            await self._feed.publish(entry)
        return True

    async def query_events(self, filters: AuditFilters) -> list[AuditEntry]:
        self.query_calls += 1
        if self._query_delay_s:
            await asyncio.sleep(self._query_delay_s)
        if self.fail_queries:
            raise RuntimeError("activity log unavailable")
        rows = [e for e in self.entries if _matches(e, filters)]
        rows.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return rows[filters.offset:filters.offset + filters.limit]

    async def count_events(self, filters: AuditFilters) -> int:
        return sum(1 for e in self.entries if _matches(e, filters))

    async def health_check(self) -> bool:
        return not self.fail_queries

    async def close(self) -> None:
        return None

    def actions(self) -> list[str]:
        return [e.action for e in self.entries]


def _matches(entry: AuditEntry, filters: AuditFilters) -> bool:
    if filters.action_prefix is not None:
        if not entry.action.startswith(filters.action_prefix):
            return False
    elif filters.action is not None and entry.action != filters.action:
        return False
    if filters.user_id is not None and entry.user_id != filters.user_id:
        return False
    if filters.entity_type is not None and entry.entity_type != filters.entity_type:
        return False
    if filters.since is not None and entry.created_at < filters.since:
        return False
    if filters.until is not None and entry.created_at > filters.until:
        return False
    return True


@pytest.fixture
def audit() -> RecordingAuditBackend:
    return RecordingAuditBackend()


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Never reach real Supabase or Resend from the test suite."""
    for name in (
        "SUPABASE_URL",
        "SUPABASE_KEY",
        "RESEND_API_KEY",
        "ADMIN_NOTIFICATION_EMAIL",
        "CRMGUARD_CONFIG",
        "CRMGUARD_PORT",
        "CRMGUARD_FIXTURES",
        "CRMGUARD_AUDIT_DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the slowapi request limiter storage and reveal cap between tests."""
    from crmguard.auth.limiter import limiter, set_reveal_request_limit
    from crmguard.constants import REVEAL_HTTP_RATE_LIMIT
    set_reveal_request_limit(REVEAL_HTTP_RATE_LIMIT)
    try:
        limiter._storage.reset()
    except Exception:
        pass  # memory storage only


@pytest.fixture(autouse=True)
def reset_protection_session() -> Iterator[None]:
    """Forget any process-wide ProtectionSession a test left installed."""
    from crmguard.security.session import ProtectionSession
    yield
    ProtectionSession._current = None
