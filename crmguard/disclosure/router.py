"""Reveal endpoints.

Provides:
  POST /api/leads/{lead_id}/reveal  — disclose one PII field (audited, rate limited)
  GET  /api/reveal/quota            — remaining reveals in the caller's rolling window

Both endpoints require authentication via Depends(authenticate_request).
The per-user reveal quota (429 + Retry-After) is distinct from the
per-address slowapi request cap, which also answers 429.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from crmguard.auth.identity import Identity
from crmguard.auth.limiter import limiter, reveal_request_limit
from crmguard.auth.middleware import authenticate_request
from crmguard.disclosure.errors import RateLimitExceededError, RevealError
from crmguard.disclosure.service import RevealService
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["disclosure"])


class RevealRequest(BaseModel):
    """Request body for POST /api/leads/{lead_id}/reveal."""

    field: str
    """'email' or 'phone'."""


def reveal_error_response(exc: RevealError) -> JSONResponse:
    """Map a RevealError onto its HTTP status and JSON body."""
    content: dict[str, Any] = {"error": {"code": exc.code, "message": exc.message}}
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceededError):
        content["retry_after_seconds"] = exc.retry_after_seconds
        content["limit"] = exc.limit
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@router.post("/leads/{lead_id}/reveal")
@limiter.limit(reveal_request_limit)
async def reveal_lead_field(
    lead_id: str,
    body: RevealRequest,
    request: Request,
    identity: Identity = Depends(authenticate_request),
) -> Any:
    """Return the unmasked value of one field of one lead.

    Returns:
        JSON: {lead_id, field, value, reveals_remaining, auto_hide_seconds}

    Raises (as JSON error bodies):
        400 invalid_field, 403 access_denied, 404 lead_not_found,
        429 rate_limit_exceeded (Retry-After), 500 reveal_failed
    """
    service: RevealService = request.app.state.reveal_service
    try:
        result = await service.reveal(identity, lead_id, body.field)
    except RevealError as exc:
        return reveal_error_response(exc)

    return {
        "lead_id": lead_id,
        "field": body.field,
        "value": result.value,
        "reveals_remaining": result.reveals_remaining,
        "auto_hide_seconds": service.auto_hide_seconds,
    }


@router.get("/reveal/quota")
async def reveal_quota(
    request: Request,
    identity: Identity = Depends(authenticate_request),
) -> dict[str, Any]:
    """Remaining reveals for the caller. Does not consume quota."""
    service: RevealService = request.app.state.reveal_service
    decision = await service.quota(identity)
    return {
        "remaining": decision.remaining,
        "limit": service.counter.max_reveals,
        "window_seconds": service.counter.window_seconds,
        "auto_hide_seconds": service.auto_hide_seconds,
    }
