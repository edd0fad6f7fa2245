"""Typed security signals emitted by the detectors.

A signal is ephemeral: one detector produces it, the ViolationLedger consumes
it immediately, and only a summarised AuditEntry is ever persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from crmguard.audit.models import utcnow


class SignalKind(str, Enum):
    SCREENSHOT = "screenshot"
    FOCUS_LOST = "focus_lost"
    TAB_SWITCH = "tab_switch"
    DEV_TOOLS_OPENED = "dev_tools_opened"
    COPY = "copy"
    CUT = "cut"
    PASTE = "paste"
    SELECT_ALL = "select_all"
    RIGHT_CLICK = "right_click"


# Signals that count as a strike. Focus loss and tab switches are cosmetic.
HOSTILE_KINDS: frozenset[SignalKind] = frozenset({
    SignalKind.SCREENSHOT,
    SignalKind.DEV_TOOLS_OPENED,
    SignalKind.COPY,
    SignalKind.CUT,
    SignalKind.PASTE,
    SignalKind.SELECT_ALL,
    SignalKind.RIGHT_CLICK,
})

CLIPBOARD_KINDS: frozenset[SignalKind] = frozenset({
    SignalKind.COPY,
    SignalKind.CUT,
    SignalKind.PASTE,
    SignalKind.SELECT_ALL,
    SignalKind.RIGHT_CLICK,
})

_AUDIT_ACTIONS: dict[SignalKind, str] = {
    SignalKind.SCREENSHOT: "screenshot_attempt",
    SignalKind.FOCUS_LOST: "focus_lost",
    SignalKind.TAB_SWITCH: "tab_switch",
    SignalKind.DEV_TOOLS_OPENED: "dev_tools_opened",
}


@dataclass(frozen=True)
class SecuritySignal:
    kind: SignalKind
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def hostile(self) -> bool:
        return self.kind in HOSTILE_KINDS

    @property
    def audit_action(self) -> str:
        """Activity-log action name; every clipboard kind shares one action."""
        return _AUDIT_ACTIONS.get(self.kind, "copy_attempt_blocked")

    def audit_details(self) -> dict[str, Any]:
        details: dict[str, Any] = dict(self.metadata)
        if self.kind in CLIPBOARD_KINDS:
            details["type"] = self.kind.value
        details["timestamp"] = self.timestamp.isoformat()
        return details


SignalSink = Callable[[SecuritySignal], None]
