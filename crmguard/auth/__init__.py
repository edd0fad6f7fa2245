"""crmguard identity boundary.

Public API:
  - Identity                   — authenticated actor (role, kill-switch state, profile)
  - IdentityDirectory          — lookup protocol (token → identity, bulk profiles)
  - StaticIdentityDirectory    — fixtures / tests
  - SupabaseIdentityDirectory  — Supabase Auth + RPC role checks
  - authenticate_request()     — FastAPI Depends() dependency (401 / 403)
  - require_admin()            — FastAPI Depends() dependency (403 for non-admins)
"""

from __future__ import annotations

from crmguard.auth.identity import (
    ROLE_ADMIN,
    ROLE_AGENT,
    Identity,
    IdentityDirectory,
    StaticIdentityDirectory,
    SupabaseIdentityDirectory,
)
from crmguard.auth.middleware import authenticate_request, require_admin

__all__ = [
    "ROLE_ADMIN",
    "ROLE_AGENT",
    "Identity",
    "IdentityDirectory",
    "StaticIdentityDirectory",
    "SupabaseIdentityDirectory",
    "authenticate_request",
    "require_admin",
]
