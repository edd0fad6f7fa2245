"""ViolationLedger — per-session strike counter and escalation state machine.

States:
    NORMAL      count == 0, no overlay
    WARNED      1 <= count <= threshold-2, overlay shows the triggering reason
    CRITICAL    count == threshold-1, overlay forced to the final-warning reason
    TERMINATED  count >= threshold, non-dismissable overlay, sign-out after a delay

Every hostile signal increments the count by exactly one and (re)starts the
reset timer; if the timer elapses with no further hostile signal the ledger
returns to NORMAL with count 0. Focus-loss and tab-switch signals only toggle
the overlay and never count as strikes.

Each signal starts its audit write before the in-memory state is updated. The
write completes asynchronously; a failed write is logged and never blocks
escalation. The ledger is the only writer of ViolationState: callers get
copies from ``state``.

Termination is final. Sign-out fires exactly once, after
``sign_out_delay_seconds``, and closing the ledger while the sign-out is
pending fires it immediately rather than cancelling it.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from crmguard.audit.models import ENTITY_SECURITY, AuditEntry, utcnow
from crmguard.audit.protocol import AuditBackend
from crmguard.constants import MAX_VIOLATIONS_BEFORE_LOGOUT, SIGN_OUT_DELAY_SECONDS, VIOLATION_RESET_MINUTES
from crmguard.security.signals import CLIPBOARD_KINDS, SecuritySignal, SignalKind
from crmguard.utils.logger import get_logger
from crmguard.utils.timers import TimerHandle, TimerScope

logger = get_logger(__name__)

SignOut = Callable[[], Awaitable[None]]


class LedgerState(str, Enum):
    NORMAL = "normal"
    WARNED = "warned"
    CRITICAL = "critical"
    TERMINATED = "terminated"


class OverlayReason(str, Enum):
    SCREENSHOT = "screenshot"
    FOCUS_LOST = "focus_lost"
    DEV_TOOLS = "dev_tools"
    CLIPBOARD = "clipboard"
    VIOLATION = "violation"


@dataclass
class ViolationState:
    count: int = 0
    last_signal_at: Optional[datetime] = None
    overlay_visible: bool = False
    overlay_reason: OverlayReason = OverlayReason.FOCUS_LOST
    reset_deadline: Optional[datetime] = None
    phase: LedgerState = LedgerState.NORMAL

    @property
    def acknowledgeable(self) -> bool:
        """Focus-loss overlays clear on refocus; the terminal overlay never clears."""
        return (
            self.overlay_visible
            and self.phase is not LedgerState.TERMINATED
            and self.overlay_reason is not OverlayReason.FOCUS_LOST
        )


class Notifier(Protocol):
    """User-visible, non-crashing notification surface (toast, banner, ...)."""

    def warning(self, title: str, description: str) -> None:
        ...

    def error(self, title: str, description: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier: routes user-facing messages to the structured log."""

    def warning(self, title: str, description: str) -> None:
        logger.warning("security_notice", title=title, description=description)

    def error(self, title: str, description: str) -> None:
        logger.error("security_notice", title=title, description=description)


def _reason_for(kind: SignalKind) -> OverlayReason:
    if kind is SignalKind.SCREENSHOT:
        return OverlayReason.SCREENSHOT
    if kind is SignalKind.DEV_TOOLS_OPENED:
        return OverlayReason.DEV_TOOLS
    if kind in CLIPBOARD_KINDS:
        return OverlayReason.CLIPBOARD
    return OverlayReason.FOCUS_LOST


class ViolationLedger:
    """Aggregates signals for one authenticated session.

    Usage:
        ledger = ViolationLedger(user_id, audit_backend, sign_out)
        detector = ScreenshotDetector(ledger.submit)
        ...
        ledger.close()
    """

    def __init__(
        self,
        user_id: str,
        audit: AuditBackend,
        sign_out: SignOut,
        max_violations: int = MAX_VIOLATIONS_BEFORE_LOGOUT,
        reset_seconds: float = VIOLATION_RESET_MINUTES * 60,
        sign_out_delay_seconds: float = SIGN_OUT_DELAY_SECONDS,
        notifier: Optional[Notifier] = None,
        scope: Optional[TimerScope] = None,
    ) -> None:
        if max_violations < 1:
            raise ValueError("max_violations must be at least 1")
        self.user_id = user_id
        self._audit = audit
        self._sign_out = sign_out
        self._max = max_violations
        self._reset_seconds = reset_seconds
        self._sign_out_delay = sign_out_delay_seconds
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._scope = scope or TimerScope("violation_ledger")
        self._state = ViolationState()
        self._overlay_cause = OverlayReason.FOCUS_LOST
        self._reset_timer: Optional[TimerHandle] = None
        self._sign_out_timer: Optional[TimerHandle] = None
        self._signed_out = False
        self._closed = False

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def state(self) -> ViolationState:
        return dataclasses.replace(self._state)

    @property
    def count(self) -> int:
        return self._state.count

    @property
    def phase(self) -> LedgerState:
        return self._state.phase

    @property
    def terminated(self) -> bool:
        return self._state.phase is LedgerState.TERMINATED

    @property
    def signed_out(self) -> bool:
        return self._signed_out

    @property
    def max_violations(self) -> int:
        return self._max

    # ── Signal intake ─────────────────────────────────────────────────────────

    def submit(self, signal: SecuritySignal) -> None:
        """Consume one signal. Never raises."""
        if self._closed or self.terminated:
            logger.debug("signal_ignored", kind=signal.kind.value, terminated=self.terminated)
            return
        try:
            if signal.hostile:
                self._record_violation(signal)
            else:
                self._record_focus_loss(signal)
        except Exception as exc:
            logger.error(
                "ledger_signal_failed",
                kind=signal.kind.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def focus_restored(self) -> None:
        """Clear a focus-loss overlay. Strike overlays stay until acknowledged."""
        if self.terminated:
            return
        if self._overlay_cause is OverlayReason.FOCUS_LOST:
            self._state.overlay_visible = False

    def acknowledge(self) -> bool:
        """Dismiss the overlay. Not available for focus loss or after termination."""
        if not self._state.acknowledgeable:
            return False
        self._state.overlay_visible = False
        return True

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for in-flight audit writes and a fired sign-out."""
        await self._scope.drain()

    def close(self) -> None:
        """Cancel every timer. A pending sign-out is fired, never dropped."""
        if self._closed:
            return
        if self.terminated and not self._signed_out:
            if self._sign_out_timer is not None:
                self._sign_out_timer.cancel()
            self._fire_sign_out()
        self._closed = True
        self._scope.close()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _record_violation(self, signal: SecuritySignal) -> None:
        count = self._state.count + 1
        self._write_audit(signal, violation_count=count)
        self._restart_reset_timer()

        now = utcnow()
        self._overlay_cause = _reason_for(signal.kind)
        self._state.count = count
        self._state.last_signal_at = signal.timestamp
        self._state.reset_deadline = now + timedelta(seconds=self._reset_seconds)
        self._state.overlay_visible = True
        self._state.overlay_reason = self._displayed_reason()
        self._state.phase = self._phase_for(count)

        logger.warning(
            "violation_recorded",
            user_id=self.user_id,
            kind=signal.kind.value,
            count=count,
            max_violations=self._max,
            phase=self._state.phase.value,
        )
        self._notifier.warning(
            f"Security Warning: {signal.audit_action.replace('_', ' ')}",
            f"Violation {count}/{self._max}. This activity is being monitored.",
        )

        if count >= self._max:
            self._terminate()

    def _record_focus_loss(self, signal: SecuritySignal) -> None:
        self._write_audit(signal)
        # An unacknowledged strike overlay keeps its cause.
        if not (self._state.overlay_visible and self._overlay_cause is not OverlayReason.FOCUS_LOST):
            self._overlay_cause = OverlayReason.FOCUS_LOST
        self._state.last_signal_at = signal.timestamp
        self._state.overlay_visible = True
        self._state.overlay_reason = self._displayed_reason()
        logger.info("focus_loss_recorded", user_id=self.user_id, kind=signal.kind.value)

    def _displayed_reason(self) -> OverlayReason:
        if self._state.count >= self._max - 1:
            return OverlayReason.VIOLATION
        return self._overlay_cause

    def _phase_for(self, count: int) -> LedgerState:
        if count <= 0:
            return LedgerState.NORMAL
        if count >= self._max:
            return LedgerState.TERMINATED
        if count == self._max - 1:
            return LedgerState.CRITICAL
        return LedgerState.WARNED

    def _restart_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
        self._reset_timer = self._scope.call_later(
            self._reset_seconds, self._reset, name="violation_reset"
        )

    def _reset(self) -> None:
        self._reset_timer = None
        if self.terminated:
            return
        logger.info("violation_count_reset", user_id=self.user_id, previous_count=self._state.count)
        self._state.count = 0
        self._state.reset_deadline = None
        self._state.overlay_visible = False
        self._state.phase = LedgerState.NORMAL
        self._overlay_cause = OverlayReason.FOCUS_LOST
        self._state.overlay_reason = OverlayReason.FOCUS_LOST

    def _terminate(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None
        self._state.reset_deadline = None
        self._state.overlay_visible = True
        self._state.overlay_reason = OverlayReason.VIOLATION
        logger.error(
            "session_terminated",
            user_id=self.user_id,
            count=self._state.count,
            sign_out_delay_s=self._sign_out_delay,
        )
        self._notifier.error(
            "Session Terminated",
            "Too many security violations. You have been logged out.",
        )
        self._sign_out_timer = self._scope.call_later(
            self._sign_out_delay, self._fire_sign_out, name="sign_out"
        )

    def _fire_sign_out(self) -> None:
        if self._signed_out:
            return
        self._signed_out = True
        self._sign_out_timer = None
        self._scope.spawn(self._call_sign_out(), name="sign_out")

    async def _call_sign_out(self) -> None:
        try:
            await self._sign_out()
            logger.info("sign_out_completed", user_id=self.user_id)
        except Exception as exc:
            logger.error(
                "sign_out_failed",
                user_id=self.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def _write_audit(self, signal: SecuritySignal, violation_count: Optional[int] = None) -> None:
        details = signal.audit_details()
        if violation_count is not None:
            details["violation_count"] = violation_count
        entry = AuditEntry(
            user_id=self.user_id,
            action=signal.audit_action,
            entity_type=ENTITY_SECURITY,
            details=details,
        )
        self._scope.spawn(self._persist(entry), name="audit_write")

    async def _persist(self, entry: AuditEntry) -> None:
        try:
            ok = await self._audit.log_event(entry)
        except Exception as exc:
            ok = False
            logger.error("security_audit_write_error", error=str(exc), error_type=type(exc).__name__)
        if not ok:
            logger.warning(
                "security_audit_write_failed",
                user_id=entry.user_id,
                action=entry.action,
                entry_id=entry.id,
            )
