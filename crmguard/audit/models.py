"""AuditEntry and AuditFilters dataclasses for the activity log.

The activity log is append-only: entries are written once and never updated
or deleted by crmguard. Every reveal, every security signal, and every
dispatched alert produces exactly one entry.

IMPORTANT: ``details`` MUST NEVER contain an unmasked e-mail address or
phone number. A reveal entry records which field was disclosed, not its value.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from crmguard.utils.ulid import generate_ulid

# ─── Well-known actions ───────────────────────────────────────────────────────

ACTION_SECURITY_ALERT_SENT = "security_alert_sent"
ACTION_REVEAL_RATE_LIMITED = "reveal_rate_limited"

ENTITY_SECURITY = "security"
ENTITY_LEAD = "lead"
ENTITY_AGENT = "agent"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── AuditEntry ───────────────────────────────────────────────────────────────


@dataclass
class AuditEntry:
    """One immutable row of the activity log.

    Field reference:
        Required at construction: user_id, action, entity_type
        Generated when omitted: id (ULID), created_at (UTC now)
        Optional: entity_id, details
    """

    user_id: str
    """Identity that performed the action."""
    action: str
    """What happened: 'revealed_email', 'screenshot_attempt', 'security_alert_sent', ..."""
    entity_type: str
    """'lead', 'security', 'agent', ..."""
    entity_id: Optional[str] = None
    """Affected entity; None for session-level security events."""
    details: Optional[dict[str, Any]] = None
    """JSON-serialisable context. Never raw PII."""
    id: str = field(default_factory=generate_ulid)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_reveal(self) -> bool:
        return self.action.startswith("revealed_")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


def parse_timestamp(raw: Any) -> datetime:
    """Parse a stored timestamp into an aware UTC datetime."""
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str) and raw:
        # PostgREST emits a trailing 'Z' on some versions.
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    else:
        return utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ─── AuditFilters ─────────────────────────────────────────────────────────────


@dataclass
class AuditFilters:
    """Query filters for AuditBackend.query_events() and count_events().

    action_prefix takes precedence over action when both are set — the
    aggregator uses action_prefix='revealed_' to select every reveal kind.
    """

    action: Optional[str] = None
    action_prefix: Optional[str] = None
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    since: Optional[datetime] = None
    """Include entries with created_at >= since."""
    until: Optional[datetime] = None
    """Include entries with created_at <= until."""
    limit: int = 50
    offset: int = 0


def entry_from_row(row: Any) -> AuditEntry:
    """Deserialise a stored row (dict, aiosqlite.Row, or realtime record).

    ``details`` may arrive as a dict (PostgREST jsonb) or a JSON string (SQLite).
    """
    details = row["details"]
    if isinstance(details, str):
        details = json.loads(details) if details else None
    return AuditEntry(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        action=row["action"],
        entity_type=row["entity_type"],
        entity_id=str(row["entity_id"]) if row["entity_id"] is not None else None,
        details=details,
        created_at=parse_timestamp(row["created_at"]),
    )
