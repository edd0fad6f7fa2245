"""Suspicious reveal patterns — a pure function over the activity log.

A user is flagged when the number of ``revealed_*`` entries they produced in
the rolling window ending at ``now`` reaches ``threshold``. The window is
recomputed relative to ``now`` on every call; nothing here is stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from crmguard.audit.models import AuditEntry
from crmguard.auth.identity import Identity
from crmguard.constants import SUSPICIOUS_THRESHOLD, SUSPICIOUS_WINDOW_MINUTES

UNKNOWN_USER_NAME = "Unknown User"


@dataclass(frozen=True)
class RecentAction:
    action: str
    timestamp: datetime
    entity_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "timestamp": self.timestamp.isoformat(),
            "entity_id": self.entity_id,
        }


@dataclass(frozen=True)
class SuspiciousPattern:
    user_id: str
    user_name: str
    user_email: str
    reveal_count: int
    window_minutes: float
    recent_actions: list[RecentAction] = field(default_factory=list)

    @property
    def first_reveal_at(self) -> Optional[datetime]:
        return min((a.timestamp for a in self.recent_actions), default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "reveal_count": self.reveal_count,
            "window_minutes": self.window_minutes,
            "recent_actions": [a.to_dict() for a in self.recent_actions],
        }


def detect_suspicious_patterns(
    entries: Iterable[AuditEntry],
    now: datetime,
    window_minutes: float = SUSPICIOUS_WINDOW_MINUTES,
    threshold: int = SUSPICIOUS_THRESHOLD,
    profiles: Optional[Mapping[str, Identity]] = None,
) -> list[SuspiciousPattern]:
    """Group recent reveal entries by user and return those at or over ``threshold``.

    ``entries`` may contain any actions and any ages; only reveals with
    ``now - created_at < window`` are counted. Results are ordered by reveal
    count, highest first. Each pattern lists its actions newest first.
    """
    window = timedelta(minutes=window_minutes)
    profiles = profiles or {}

    grouped: dict[str, list[AuditEntry]] = {}
    for entry in entries:
        if not entry.is_reveal:
            continue
        if now - entry.created_at >= window:
            continue
        grouped.setdefault(entry.user_id, []).append(entry)

    patterns: list[SuspiciousPattern] = []
    for user_id, reveals in grouped.items():
        if len(reveals) < threshold:
            continue
        reveals.sort(key=lambda e: e.created_at, reverse=True)
        profile = profiles.get(user_id)
        patterns.append(
            SuspiciousPattern(
                user_id=user_id,
                user_name=(profile.full_name if profile and profile.full_name else UNKNOWN_USER_NAME),
                user_email=(profile.email if profile and profile.email else ""),
                reveal_count=len(reveals),
                window_minutes=window_minutes,
                recent_actions=[
                    RecentAction(action=e.action, timestamp=e.created_at, entity_id=e.entity_id)
                    for e in reveals
                ],
            )
        )

    patterns.sort(key=lambda p: (-p.reveal_count, p.user_id))
    return patterns
