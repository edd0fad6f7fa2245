"""Unit tests for the identity directories (static fixtures and Supabase)."""

from __future__ import annotations

from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

from crmguard.auth.identity import (
    ROLE_ADMIN,
    ROLE_AGENT,
    Identity,
    IdentityDirectory,
    StaticIdentityDirectory,
    SupabaseIdentityDirectory,
)

FIXTURES = [
    {"user_id": "agent-1", "full_name": "Alice Agent", "email": "alice@corp.com", "token": "agent-token"},
    {"user_id": "admin-1", "role": "admin", "token": "admin-token"},
    {"user_id": "gone-1", "active": False},
]


class TestIdentity:
    def test_agent_requires_protection(self) -> None:
        assert Identity(user_id="a").protection_required

    def test_admin_and_inactive_are_exempt(self) -> None:
        assert Identity(user_id="a", role=ROLE_ADMIN).is_admin
        assert not Identity(user_id="a", role=ROLE_ADMIN).protection_required
        assert not Identity(user_id="a", active=False).protection_required


class TestStaticIdentityDirectory:
    async def test_from_fixtures(self) -> None:
        directory = StaticIdentityDirectory.from_fixtures(FIXTURES)
        assert isinstance(directory, IdentityDirectory)

        agent = await directory.resolve_token("agent-token")
        assert agent is not None
        assert agent.role == ROLE_AGENT
        assert agent.full_name == "Alice Agent"

        admin = await directory.resolve_token("admin-token")
        assert admin is not None and admin.is_admin

        gone = await directory.get_identity("gone-1")
        assert gone is not None and not gone.active

    async def test_unknown_token_and_user(self) -> None:
        directory = StaticIdentityDirectory.from_fixtures(FIXTURES)
        assert await directory.resolve_token("nope") is None
        assert await directory.get_identity("nobody") is None

    async def test_get_profiles_skips_unknown(self) -> None:
        directory = StaticIdentityDirectory.from_fixtures(FIXTURES)
        profiles = await directory.get_profiles(["agent-1", "nobody"])
        assert list(profiles) == ["agent-1"]

    async def test_add(self) -> None:
        directory = StaticIdentityDirectory()
        directory.add(Identity(user_id="agent-9"), token="t9")
        resolved = await directory.resolve_token("t9")
        assert resolved is not None and resolved.user_id == "agent-9"

    def test_from_fixtures_none(self) -> None:
        assert isinstance(StaticIdentityDirectory.from_fixtures(None), StaticIdentityDirectory)


# ─── SupabaseIdentityDirectory ────────────────────────────────────────────────


def _response(data: Any) -> MagicMock:
    response = MagicMock()
    response.data = data
    return response


def _supabase_client(
    role: Optional[str] = "agent",
    active: bool = True,
    profiles: Optional[list[dict[str, Any]]] = None,
    auth_user_id: Optional[str] = "agent-1",
) -> MagicMock:
    client = MagicMock()

    auth_response = MagicMock()
    auth_response.user = MagicMock(id=auth_user_id) if auth_user_id else None
    client.auth.get_user = AsyncMock(return_value=auth_response)

    def rpc(fn: str, params: dict[str, Any]) -> MagicMock:
        call = MagicMock()
        call.execute = AsyncMock(return_value=_response(role if fn == "get_user_role" else active))
        return call

    client.rpc.side_effect = rpc

    chain = MagicMock()
    chain.select.return_value = chain
    chain.in_.return_value = chain
    chain.execute = AsyncMock(return_value=_response(profiles or []))
    client.table.return_value = chain
    return client


class TestSupabaseIdentityDirectory:
    async def test_resolve_token(self) -> None:
        client = _supabase_client(
            profiles=[{"user_id": "agent-1", "full_name": "Alice Agent", "email": "alice@corp.com"}]
        )
        directory = SupabaseIdentityDirectory(client)
        identity = await directory.resolve_token("jwt")
        assert identity == Identity(
            user_id="agent-1", role=ROLE_AGENT, active=True, full_name="Alice Agent", email="alice@corp.com"
        )
        client.auth.get_user.assert_awaited_once_with("jwt")

    async def test_unknown_token(self) -> None:
        directory = SupabaseIdentityDirectory(_supabase_client(auth_user_id=None))
        assert await directory.resolve_token("jwt") is None

    async def test_unrecognised_role_is_unknown(self) -> None:
        directory = SupabaseIdentityDirectory(_supabase_client(role="superuser"))
        assert await directory.get_identity("agent-1") is None

    async def test_inactive_flag(self) -> None:
        directory = SupabaseIdentityDirectory(_supabase_client(active=False))
        identity = await directory.get_identity("agent-1")
        assert identity is not None and not identity.active

    async def test_rpc_failure_fails_closed(self) -> None:
        client = _supabase_client()
        client.rpc.side_effect = ConnectionError("unreachable")
        directory = SupabaseIdentityDirectory(client)
        assert await directory.get_identity("agent-1") is None

    async def test_auth_failure_fails_closed(self) -> None:
        client = _supabase_client()
        client.auth.get_user = AsyncMock(side_effect=RuntimeError("bad jwt"))
        assert await SupabaseIdentityDirectory(client).resolve_token("jwt") is None

    async def test_get_profiles(self) -> None:
        client = _supabase_client(
            profiles=[{"user_id": "agent-1", "full_name": "Alice Agent", "email": None, "is_active": False}]
        )
        profiles = await SupabaseIdentityDirectory(client).get_profiles(["agent-1", "agent-1", "agent-2"])
        assert set(profiles) == {"agent-1"}
        assert not profiles["agent-1"].active
        client.table.return_value.in_.assert_called_once_with("user_id", ["agent-1", "agent-2"])

    async def test_get_profiles_failure_is_empty(self) -> None:
        client = _supabase_client()
        client.table.return_value.execute = AsyncMock(side_effect=RuntimeError("boom"))
        assert await SupabaseIdentityDirectory(client).get_profiles(["agent-1"]) == {}

    async def test_no_client(self) -> None:
        directory = SupabaseIdentityDirectory(None)
        assert await directory.resolve_token("jwt") is None
        assert await directory.get_identity("agent-1") is None
        assert await directory.get_profiles(["agent-1"]) == {}
