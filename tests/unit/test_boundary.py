"""Unit tests for data boundary selection and fixtures loading."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

from crmguard.audit.feed import LocalChangeFeed, SupabaseChangeFeed
from crmguard.audit.models import AuditEntry
from crmguard.audit.sqlite_backend import LocalSQLiteBackend
from crmguard.audit.supabase_backend import SupabaseBackend
from crmguard.auth.identity import StaticIdentityDirectory, SupabaseIdentityDirectory
from crmguard.boundary import create_data_boundary, load_fixtures
from crmguard.config import Config
from crmguard.disclosure.leads import InMemoryLeadStore, SupabaseLeadStore

FIXTURES = """\
identities:
  - user_id: agent-1
    token: agent-token
leads:
  - id: lead-1
    name: Bob Buyer
    email: bob@corp.com
    assigned_to: agent-1
"""


def _config(tmp_path: Any) -> Config:
    config = Config.defaults()
    config.audit.path = str(tmp_path / "audit.db")
    return config


class TestLocalBoundary:
    async def test_selected_without_supabase_env(self, tmp_path: Any) -> None:
        fixtures = tmp_path / "fixtures.yaml"
        fixtures.write_text(FIXTURES)
        config = _config(tmp_path)
        config.fixtures_path = str(fixtures)

        boundary = await create_data_boundary(config)
        try:
            assert boundary.backend == "local"
            assert not boundary.managed
            assert isinstance(boundary.audit, LocalSQLiteBackend)
            assert isinstance(boundary.feed, LocalChangeFeed)
            assert isinstance(boundary.directory, StaticIdentityDirectory)
            assert isinstance(boundary.leads, InMemoryLeadStore)
            assert (await boundary.directory.resolve_token("agent-token")).user_id == "agent-1"
            lead = await boundary.leads.get_lead("lead-1")
            assert lead is not None and lead.email == "bob@corp.com"
        finally:
            await boundary.close()
        assert not boundary.feed.connected

    async def test_env_overrides(self, tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> None:
        fixtures = tmp_path / "env-fixtures.yaml"
        fixtures.write_text(FIXTURES)
        db_path = str(tmp_path / "env" / "audit.db")
        monkeypatch.setenv("CRMGUARD_FIXTURES", str(fixtures))
        monkeypatch.setenv("CRMGUARD_AUDIT_DB_PATH", db_path)

        boundary = await create_data_boundary(_config(tmp_path))
        try:
            assert boundary.audit.db_path == db_path
            assert await boundary.leads.get_lead("lead-1") is not None
        finally:
            await boundary.close()

    async def test_local_writes_publish_to_feed(self, tmp_path: Any) -> None:
        boundary = await create_data_boundary(_config(tmp_path))
        seen: list[Any] = []

        async def on_entry(entry: Any) -> None:
            seen.append(entry)

        try:
            await boundary.feed.subscribe(on_entry)
            await boundary.audit.log_event(AuditEntry(user_id="agent-1", action="copy_attempt", entity_type="security"))
        finally:
            await boundary.close()
        assert [e.action for e in seen] == ["copy_attempt"]


class TestSupabaseBoundary:
    async def test_selected_with_both_env_vars(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
        monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
        monkeypatch.setenv("SUPABASE_KEY", "service-role-key")
        monkeypatch.setattr(SupabaseBackend, "initialize", AsyncMock(return_value=None))

        boundary = await create_data_boundary(_config(tmp_path))
        try:
            assert boundary.backend == "supabase"
            assert boundary.managed
            assert isinstance(boundary.audit, SupabaseBackend)
            assert isinstance(boundary.leads, SupabaseLeadStore)
            assert isinstance(boundary.directory, SupabaseIdentityDirectory)
            assert isinstance(boundary.feed, SupabaseChangeFeed)
        finally:
            await boundary.close()

    async def test_url_alone_is_not_enough(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
        monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
        boundary = await create_data_boundary(_config(tmp_path))
        try:
            assert boundary.backend == "local"
        finally:
            await boundary.close()


class TestLoadFixtures:
    def test_no_path_is_empty(self) -> None:
        assert load_fixtures(None) == {}

    def test_missing_file_exits(self, tmp_path: Any) -> None:
        with pytest.raises(SystemExit):
            load_fixtures(str(tmp_path / "absent.yaml"))

    def test_non_mapping_exits(self, tmp_path: Any) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(SystemExit):
            load_fixtures(str(path))

    def test_empty_file_is_empty(self, tmp_path: Any) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_fixtures(str(path)) == {}
