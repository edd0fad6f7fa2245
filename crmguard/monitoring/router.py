"""Administrator monitoring endpoints.

Provides:
  GET  /api/security/suspicious                 — flagged users + incident records
  POST /api/security/refresh                    — force an aggregation pass
  POST /api/security/suspicious/{user_id}/alert — manual alert resend
  GET  /api/security/activity                   — recent activity feed (search / action filter)

Every endpoint requires an active administrator (Depends(require_admin)).
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from crmguard.auth.identity import Identity
from crmguard.auth.limiter import ADMIN_REQUEST_RATE_LIMIT, limiter
from crmguard.auth.middleware import require_admin
from crmguard.disclosure.errors import AlertDispatchError
from crmguard.monitoring.aggregator import RefreshSnapshot, SuspiciousActivityAggregator
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/security", tags=["monitoring"])


def _aggregator(request: Request) -> SuspiciousActivityAggregator:
    return request.app.state.aggregator


def _suspicious_body(aggregator: SuspiciousActivityAggregator, snapshot: Optional[RefreshSnapshot]) -> dict[str, Any]:
    incidents = aggregator.incidents
    return {
        "refreshed_at": snapshot.refreshed_at.isoformat() if snapshot else None,
        "window_minutes": aggregator.config.window_minutes,
        "threshold": aggregator.config.threshold,
        "feed_connected": aggregator.feed_connected,
        "patterns": [
            {
                **p.to_dict(),
                "incident": incidents[p.user_id].to_dict() if p.user_id in incidents else None,
            }
            for p in (snapshot.patterns if snapshot else [])
        ],
    }


@router.get("/suspicious")
@limiter.limit(ADMIN_REQUEST_RATE_LIMIT)
async def list_suspicious(
    request: Request,
    admin: Identity = Depends(require_admin),
) -> dict[str, Any]:
    """Currently flagged users, highest reveal count first."""
    aggregator = _aggregator(request)
    snapshot = aggregator.snapshot or await aggregator.refresh("admin_view")
    return _suspicious_body(aggregator, snapshot)


@router.post("/refresh")
@limiter.limit(ADMIN_REQUEST_RATE_LIMIT)
async def refresh_suspicious(
    request: Request,
    admin: Identity = Depends(require_admin),
) -> dict[str, Any]:
    """Run (or join) an aggregation pass and return its result."""
    aggregator = _aggregator(request)
    snapshot = await aggregator.refresh("manual")
    logger.info("aggregator_manual_refresh", admin_id=admin.user_id, flagged=len(snapshot.patterns))
    return _suspicious_body(aggregator, snapshot)


@router.post("/suspicious/{user_id}/alert")
@limiter.limit(ADMIN_REQUEST_RATE_LIMIT)
async def resend_alert(
    user_id: str,
    request: Request,
    admin: Identity = Depends(require_admin),
) -> dict[str, Any]:
    """Send one more alert for a flagged user.

    Raises:
        HTTPException(404): The user is not currently flagged.
        HTTPException(502): The alert channel rejected the send.
    """
    aggregator = _aggregator(request)
    try:
        pattern = await aggregator.resend(user_id, requested_by=admin.user_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="User is not currently flagged")
    except AlertDispatchError as exc:
        logger.error("alert_resend_failed", user_id=user_id, admin_id=admin.user_id, error=str(exc))
        raise HTTPException(status_code=502, detail=f"Alert dispatch failed: {exc}")
    return {"sent": True, "user_id": user_id, "reveal_count": pattern.reveal_count}


@router.get("/activity")
@limiter.limit(ADMIN_REQUEST_RATE_LIMIT)
async def activity_feed(
    request: Request,
    search: Optional[str] = Query(default=None, max_length=200),
    action: Optional[str] = Query(default=None, max_length=100),
    limit: int = Query(default=100, ge=1, le=500),
    admin: Identity = Depends(require_admin),
) -> dict[str, Any]:
    """Recent activity, newest first, enriched with user names."""
    items = await _aggregator(request).activity(search=search, action=action, limit=limit)
    return {"count": len(items), "activities": [item.to_dict() for item in items]}
