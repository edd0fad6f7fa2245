"""Bearer-token authentication dependencies.

Provides ``authenticate_request()`` and ``require_admin()``: FastAPI
Depends()-compatible async dependencies that resolve the acting identity
through ``app.state.directory`` (an IdentityDirectory).

CRITICAL INVARIANT: authentication runs BEFORE any reveal counter hit or
audit read. A request that fails here never touches the rate counter.

Outcomes:
  - no / malformed Authorization header → HTTP 401
  - token unknown to the directory      → HTTP 401
  - identity deactivated (kill switch)  → HTTP 403
  - require_admin on a non-admin        → HTTP 403
"""

from __future__ import annotations

import re
from typing import Optional

from fastapi import Depends, HTTPException, Request

from crmguard.auth.identity import Identity, IdentityDirectory
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

_BEARER_RE = re.compile(r"^Bearer\s+(\S+)$", re.IGNORECASE)


def _extract_bearer(authorization: str) -> Optional[str]:
    """Return the token from 'Authorization: Bearer <token>', or None."""
    if not authorization:
        return None
    m = _BEARER_RE.match(authorization.strip())
    return m.group(1) if m else None


async def authenticate_request(request: Request) -> Identity:
    """FastAPI dependency: resolve the caller's identity.

    Raises:
        HTTPException(401): Missing or unknown bearer token.
        HTTPException(403): Identity is deactivated.
    """
    token = _extract_bearer(request.headers.get("Authorization", ""))
    if token is None:
        logger.warning(
            "authentication_failed",
            reason="missing_token",
            path=str(request.url.path),
            method=request.method,
        )
        raise HTTPException(status_code=401, detail="Authentication required")

    directory: IdentityDirectory = request.app.state.directory
    identity = await directory.resolve_token(token)
    if identity is None:
        logger.warning(
            "authentication_failed",
            reason="unknown_token",
            path=str(request.url.path),
            method=request.method,
        )
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if not identity.active:
        logger.warning(
            "authentication_rejected_inactive",
            user_id=identity.user_id,
            path=str(request.url.path),
        )
        raise HTTPException(status_code=403, detail="Account deactivated")

    return identity


async def require_admin(identity: Identity = Depends(authenticate_request)) -> Identity:
    """FastAPI dependency: the caller must be an active administrator."""
    if not identity.is_admin:
        logger.warning("admin_access_denied", user_id=identity.user_id)
        raise HTTPException(status_code=403, detail="Administrator access required")
    return identity
