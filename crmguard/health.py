"""Health endpoint for crmguard.

Implements:
  GET /health — 503 before ``app.state.ready`` is set, 200 with a status body after

The body reports the activity-log backend, the change-feed connection and
the aggregator loop. A feed drop only degrades monitoring latency (the poll
still runs), so it is reported but never flips the status to "degraded".
"""

from __future__ import annotations

import os
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from crmguard.audit.protocol import AuditBackend
from crmguard.config import Config
from crmguard.monitoring.aggregator import SuspiciousActivityAggregator

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check.

    Response body (200):
        {
          "status": "ok" | "degraded",
          "audit": "healthy" | "error",
          "change_feed": "connected" | "disconnected",
          "aggregator": "running" | "stopped",
          "last_refresh": "<iso8601>" | null,
          "open_incidents": 0,
          "deployment_mode": "self-hosted" | "managed",
          "audit_path": "/path/to/audit.db" | null
        }

    Response body (503):
        {"status": "starting", "message": "crmguard is starting up..."}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "crmguard is starting up...",
            },
        )

    config: Config = request.app.state.config
    audit: AuditBackend = request.app.state.audit_backend
    aggregator: Optional[SuspiciousActivityAggregator] = getattr(
        request.app.state, "aggregator", None
    )

    audit_ok = await audit.health_check()
    is_self_hosted = not bool(os.environ.get("SUPABASE_URL"))
    snapshot = aggregator.snapshot if aggregator is not None else None

    return {
        "status": "ok" if audit_ok else "degraded",
        "audit": "healthy" if audit_ok else "error",
        "change_feed": "connected" if aggregator is not None and aggregator.feed_connected else "disconnected",
        "aggregator": "running" if aggregator is not None and aggregator.running else "stopped",
        "last_refresh": snapshot.refreshed_at.isoformat() if snapshot else None,
        "open_incidents": len(aggregator.incidents) if aggregator is not None else 0,
        "deployment_mode": "self-hosted" if is_self_hosted else "managed",
        "audit_path": (
            os.getenv("CRMGUARD_AUDIT_DB_PATH") or os.path.expanduser(config.audit.path)
            if is_self_hosted
            else None
        ),
    }
