"""Identity boundary — who is acting, and are they allowed to act at all.

The authentication store itself is an external collaborator. crmguard only
needs three answers from it:
  - which identity a bearer token belongs to
  - that identity's role (admin | agent) and kill-switch state (active)
  - display profiles (name, e-mail) for enriching audit views and alerts

Implementations:
  StaticIdentityDirectory   — fixtures file / tests
  SupabaseIdentityDirectory — auth user lookup + get_user_role / is_user_active
                              RPCs + profiles table
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from crmguard.constants import SUPABASE_TIMEOUT_S
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

ROLE_ADMIN = "admin"
ROLE_AGENT = "agent"


@dataclass(frozen=True)
class Identity:
    """An authenticated actor."""

    user_id: str
    role: str = ROLE_AGENT
    active: bool = True
    full_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def protection_required(self) -> bool:
        """Admins are exempt from the ledger and gateway; inactive users are signed out."""
        return self.active and not self.is_admin


@runtime_checkable
class IdentityDirectory(Protocol):
    async def resolve_token(self, token: str) -> Optional[Identity]:
        """Return the identity behind ``token``, or None if the token is unknown."""
        ...

    async def get_identity(self, user_id: str) -> Optional[Identity]:
        ...

    async def get_profiles(self, user_ids: Iterable[str]) -> dict[str, Identity]:
        """Bulk profile lookup. Unknown ids are simply absent from the result."""
        ...


# ─── StaticIdentityDirectory ──────────────────────────────────────────────────


class StaticIdentityDirectory:
    """In-memory directory seeded from fixtures.

    Fixture shape (YAML ``identities:`` list):
        - user_id: agent-1
          role: agent
          active: true
          full_name: Alice Agent
          email: alice@example.com
          token: agent-1-token
    """

    def __init__(
        self,
        identities: Iterable[Identity] = (),
        tokens: Optional[dict[str, str]] = None,
    ) -> None:
        self._identities: dict[str, Identity] = {i.user_id: i for i in identities}
        self._tokens: dict[str, str] = dict(tokens or {})

    @classmethod
    def from_fixtures(cls, raw: Optional[list[dict[str, Any]]]) -> "StaticIdentityDirectory":
        identities: list[Identity] = []
        tokens: dict[str, str] = {}
        for item in raw or []:
            identity = Identity(
                user_id=str(item["user_id"]),
                role=item.get("role", ROLE_AGENT),
                active=bool(item.get("active", True)),
                full_name=item.get("full_name"),
                email=item.get("email"),
            )
            identities.append(identity)
            if item.get("token"):
                tokens[str(item["token"])] = identity.user_id
        return cls(identities, tokens)

    def add(self, identity: Identity, token: Optional[str] = None) -> None:
        self._identities[identity.user_id] = identity
        if token:
            self._tokens[token] = identity.user_id

    async def resolve_token(self, token: str) -> Optional[Identity]:
        user_id = self._tokens.get(token)
        return self._identities.get(user_id) if user_id else None

    async def get_identity(self, user_id: str) -> Optional[Identity]:
        return self._identities.get(user_id)

    async def get_profiles(self, user_ids: Iterable[str]) -> dict[str, Identity]:
        return {uid: self._identities[uid] for uid in user_ids if uid in self._identities}


# ─── SupabaseIdentityDirectory ────────────────────────────────────────────────


class SupabaseIdentityDirectory:
    """Identity lookups against Supabase Auth and the profiles table.

    Every call is bounded by ``timeout_s``. Failures resolve to "unknown"
    (None / empty dict), so an unreachable directory fails closed.
    """

    def __init__(self, client: Optional[Any], timeout_s: float = SUPABASE_TIMEOUT_S) -> None:
        self._client = client
        self._timeout_s = timeout_s

    async def resolve_token(self, token: str) -> Optional[Identity]:
        if self._client is None:
            return None
        try:
            response = await asyncio.wait_for(
                self._client.auth.get_user(token), timeout=self._timeout_s
            )
            user = getattr(response, "user", None)
            if user is None:
                return None
            return await self.get_identity(str(user.id))
        except Exception as exc:
            logger.warning(
                "identity_token_lookup_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    async def get_identity(self, user_id: str) -> Optional[Identity]:
        if self._client is None:
            return None
        try:
            role_resp, active_resp, profiles = await asyncio.gather(
                self._rpc("get_user_role", user_id),
                self._rpc("is_user_active", user_id),
                self.get_profiles([user_id]),
            )
        except Exception as exc:
            logger.warning(
                "identity_lookup_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

        role = role_resp.data if role_resp is not None else None
        if role not in (ROLE_ADMIN, ROLE_AGENT):
            return None
        profile = profiles.get(user_id)
        return Identity(
            user_id=user_id,
            role=role,
            active=bool(active_resp.data) if active_resp is not None else False,
            full_name=profile.full_name if profile else None,
            email=profile.email if profile else None,
        )

    async def get_profiles(self, user_ids: Iterable[str]) -> dict[str, Identity]:
        ids = sorted(set(user_ids))
        if self._client is None or not ids:
            return {}
        try:
            response = await asyncio.wait_for(
                self._client.table("profiles")
                .select("user_id, full_name, email, is_active")
                .in_("user_id", ids)
                .execute(),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            logger.warning(
                "profile_lookup_failed",
                count=len(ids),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return {}

        result: dict[str, Identity] = {}
        for row in response.data or []:
            uid = str(row["user_id"])
            result[uid] = Identity(
                user_id=uid,
                active=bool(row.get("is_active", True)),
                full_name=row.get("full_name"),
                email=row.get("email"),
            )
        return result

    async def _rpc(self, fn: str, user_id: str) -> Any:
        return await asyncio.wait_for(
            self._client.rpc(fn, {"_user_id": user_id}).execute(),  # type: ignore[union-attr]
            timeout=self._timeout_s,
        )
