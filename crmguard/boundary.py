"""Data boundary factory — backend selection and initialization.

Selection logic:
  1. If SUPABASE_URL and SUPABASE_KEY are both set: Supabase for everything
     (activity log, leads, identities, realtime change feed), sharing one client
  2. Otherwise: local SQLite activity log + in-process change feed, with
     identities and leads seeded from a YAML fixtures file

LocalSQLiteBackend path:
  Default: config.audit.path (~/.crmguard/audit.db)
  Override: CRMGUARD_AUDIT_DB_PATH environment variable

Fixtures path (local mode only):
  config.fixtures_path, overridden by CRMGUARD_FIXTURES

PRAGMA version guard:
  LocalSQLiteBackend.initialize() raises RuntimeError on an unexpected
  user_version. The lifespan propagates it so the process refuses to start.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional

import yaml

from crmguard.audit.feed import ChangeFeed, LocalChangeFeed, SupabaseChangeFeed
from crmguard.audit.protocol import AuditBackend
from crmguard.auth.identity import IdentityDirectory, StaticIdentityDirectory, SupabaseIdentityDirectory
from crmguard.config import Config
from crmguard.disclosure.leads import InMemoryLeadStore, LeadStore, SupabaseLeadStore
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Environment variable names ───────────────────────────────────────────────

_ENV_SUPABASE_URL = "SUPABASE_URL"
_ENV_SUPABASE_KEY = "SUPABASE_KEY"
_ENV_AUDIT_DB_PATH = "CRMGUARD_AUDIT_DB_PATH"
_ENV_FIXTURES = "CRMGUARD_FIXTURES"

BACKEND_SUPABASE = "supabase"
BACKEND_LOCAL = "local"


@dataclass
class DataBoundary:
    """Everything the services need from the outside world."""

    audit: AuditBackend
    leads: LeadStore
    directory: IdentityDirectory
    feed: ChangeFeed
    backend: str

    @property
    def managed(self) -> bool:
        return self.backend == BACKEND_SUPABASE

    async def close(self) -> None:
        await self.feed.close()
        await self.audit.close()
        logger.info("data_boundary_closed", backend=self.backend)


async def create_data_boundary(config: Config) -> DataBoundary:
    """Create and initialize the data boundary.

    Raises:
        RuntimeError: Local SQLite schema version mismatch.
        SystemExit(1): Fixtures file present but unreadable.
    """
    supabase_url = os.getenv(_ENV_SUPABASE_URL)
    supabase_key = os.getenv(_ENV_SUPABASE_KEY)

    if supabase_url and supabase_key:
        return await _create_supabase_boundary(supabase_url, supabase_key)
    return await _create_local_boundary(config)


async def _create_supabase_boundary(url: str, key: str) -> DataBoundary:
    from crmguard.audit.supabase_backend import SupabaseBackend

    backend = SupabaseBackend(url=url, key=key)
    await backend.initialize()
    client = backend.client

    logger.info(
        "data_boundary_selected",
        backend="SupabaseBackend",
        # Never log the key, only the project host
        supabase_host=url.split("//")[-1].split(".")[0] if "//" in url else "unknown",
        client_ready=client is not None,
    )
    return DataBoundary(
        audit=backend,
        leads=SupabaseLeadStore(client),
        directory=SupabaseIdentityDirectory(client),
        feed=SupabaseChangeFeed(client),
        backend=BACKEND_SUPABASE,
    )


async def _create_local_boundary(config: Config) -> DataBoundary:
    from crmguard.audit.sqlite_backend import LocalSQLiteBackend

    fixtures = load_fixtures(os.getenv(_ENV_FIXTURES) or config.fixtures_path)

    db_path = os.getenv(_ENV_AUDIT_DB_PATH, config.audit.path)
    feed = LocalChangeFeed()
    backend = LocalSQLiteBackend(db_path=db_path, feed=feed)
    await backend.initialize()

    directory = StaticIdentityDirectory.from_fixtures(fixtures.get("identities"))
    leads = InMemoryLeadStore.from_fixtures(fixtures.get("leads"))

    logger.info(
        "data_boundary_selected",
        backend="LocalSQLiteBackend",
        db_path=backend.db_path,
        identities=len(fixtures.get("identities") or []),
        leads=len(fixtures.get("leads") or []),
    )
    return DataBoundary(
        audit=backend,
        leads=leads,
        directory=directory,
        feed=feed,
        backend=BACKEND_LOCAL,
    )


def load_fixtures(path: Optional[str]) -> dict[str, Any]:
    """Read the local identities/leads fixtures file. Missing path → empty."""
    if not path:
        logger.warning("fixtures_not_configured", detail="no identities or leads loaded")
        return {}
    expanded = os.path.expanduser(path)
    try:
        with open(expanded) as fh:
            raw = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("fixtures_load_failed", path=expanded, error=str(exc))
        raise SystemExit(1) from exc
    if not isinstance(raw, dict):
        logger.error("fixtures_invalid", path=expanded, reason="top level must be a mapping")
        raise SystemExit(1)
    return raw
