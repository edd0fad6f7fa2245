"""ProtectionSession — process-wide owner of the client-side security machinery.

There is at most one active session per process (``ProtectionSession.current()``).
``enable(identity)`` wires a ViolationLedger to the three detectors, starts the
inspector poll, and applies the document-wide no-select style. ``disable()``
reverses every one of those side effects. Both are idempotent.

Administrators and deactivated identities are never protected: enabling for
them is a no-op that leaves the session disabled.

The host forwards raw events through the ``on_*`` methods; while the session
is disabled those calls are ignored.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable, ClassVar, Optional, Protocol

from crmguard.audit.protocol import AuditBackend
from crmguard.auth.identity import Identity
from crmguard.config import SecurityConfig
from crmguard.security.detectors import CopyPasteDetector, FocusDetector, ScreenshotDetector
from crmguard.security.events import ClipboardEvent, KeyEvent, WindowGeometry
from crmguard.security.ledger import Notifier, ViolationLedger, ViolationState
from crmguard.utils.logger import bind_session_id, clear_session_id, get_logger
from crmguard.utils.timers import TimerScope
from crmguard.utils.ulid import generate_ulid

logger = get_logger(__name__)

NO_SELECT_STYLE_ID = "security-no-select"

NO_SELECT_CSS = """\
body:not(input):not(textarea):not([contenteditable="true"]) {
  -webkit-user-select: none;
  user-select: none;
}
input, textarea, [contenteditable="true"] {
  -webkit-user-select: text;
  user-select: text;
}
"""


class DocumentSurface(Protocol):
    """The host document the no-select style is attached to."""

    def add_style(self, style_id: str, css: str) -> None:
        ...

    def remove_style(self, style_id: str) -> None:
        ...


class InMemoryDocument:
    """DocumentSurface for headless hosts and tests."""

    def __init__(self) -> None:
        self.styles: dict[str, str] = {}

    def add_style(self, style_id: str, css: str) -> None:
        self.styles[style_id] = css

    def remove_style(self, style_id: str) -> None:
        self.styles.pop(style_id, None)


class ProtectionSession:
    """Singleton-per-process protection lifecycle tied to authentication state."""

    _current: ClassVar[Optional["ProtectionSession"]] = None

    def __init__(
        self,
        audit: AuditBackend,
        sign_out: Callable[[], Awaitable[None]],
        security: Optional[SecurityConfig] = None,
        document: Optional[DocumentSurface] = None,
        notifier: Optional[Notifier] = None,
        geometry_source: Optional[Callable[[], Optional[WindowGeometry]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._audit = audit
        self._external_sign_out = sign_out
        self._security = security or SecurityConfig()
        self.document: DocumentSurface = document or InMemoryDocument()
        self._notifier = notifier
        self._geometry_source = geometry_source
        self._clock = clock

        self._identity: Optional[Identity] = None
        self._scope: Optional[TimerScope] = None
        self.ledger: Optional[ViolationLedger] = None
        self.screenshot: Optional[ScreenshotDetector] = None
        self.focus: Optional[FocusDetector] = None
        self.copy_paste: Optional[CopyPasteDetector] = None

    # ── Singleton access ──────────────────────────────────────────────────────

    @classmethod
    def install(cls, *args, **kwargs) -> "ProtectionSession":
        """Replace the process-wide session, disabling any previous one."""
        if cls._current is not None:
            cls._current.disable()
        cls._current = cls(*args, **kwargs)
        return cls._current

    @classmethod
    def current(cls) -> Optional["ProtectionSession"]:
        return cls._current

    @classmethod
    def uninstall(cls) -> None:
        if cls._current is not None:
            cls._current.disable()
        cls._current = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self.ledger is not None

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def violation_state(self) -> Optional[ViolationState]:
        return self.ledger.state if self.ledger is not None else None

    def enable(self, identity: Identity) -> bool:
        """Start protection for ``identity``. Returns True when protection is active."""
        if not identity.protection_required:
            if self.enabled:
                self.disable()
            logger.info(
                "protection_exempt",
                user_id=identity.user_id,
                role=identity.role,
                active=identity.active,
            )
            return False

        if self.enabled and self._identity is not None:
            if self._identity.user_id == identity.user_id:
                return True
            self.disable()

        sec = self._security
        scope = TimerScope(f"protection:{identity.user_id}")
        ledger = ViolationLedger(
            user_id=identity.user_id,
            audit=self._audit,
            sign_out=self._sign_out_for(scope, identity.user_id),
            max_violations=sec.max_violations,
            reset_seconds=sec.violation_reset_seconds,
            sign_out_delay_seconds=sec.sign_out_delay_seconds,
            notifier=self._notifier,
            scope=scope,
        )
        self.screenshot = ScreenshotDetector(
            ledger.submit, debounce_ms=sec.screenshot_debounce_ms, clock=self._clock
        )
        self.focus = FocusDetector(
            ledger.submit,
            scope,
            on_restored=ledger.focus_restored,
            grace_ms=sec.focus_grace_ms,
            threshold_px=sec.devtools_threshold_px,
            poll_seconds=sec.devtools_poll_seconds,
            geometry_source=self._geometry_source,
        )
        self.copy_paste = CopyPasteDetector(ledger.submit)
        self.focus.start()
        self.document.add_style(NO_SELECT_STYLE_ID, NO_SELECT_CSS)

        self._identity = identity
        self._scope = scope
        self.ledger = ledger
        bind_session_id(generate_ulid())
        logger.info("protection_enabled", user_id=identity.user_id)
        return True

    def disable(self) -> None:
        """Tear down detectors, timers and the no-select style. Idempotent."""
        if not self.enabled:
            return
        for detector in (self.screenshot, self.focus, self.copy_paste):
            if detector is not None:
                detector.enabled = False
        if self.focus is not None:
            self.focus.stop()
        if self.ledger is not None:
            self.ledger.close()
        self.document.remove_style(NO_SELECT_STYLE_ID)

        logger.info("protection_disabled", user_id=self._identity.user_id if self._identity else None)
        clear_session_id()
        self.screenshot = self.focus = self.copy_paste = None
        self.ledger = None
        self._identity = None

    async def drain(self) -> None:
        """Wait for in-flight audit writes and sign-out (tests and shutdown)."""
        if self._scope is not None:
            await self._scope.drain()

    def _sign_out_for(self, scope: TimerScope, user_id: str) -> Callable[[], Awaitable[None]]:
        """Sign-out bound to one enable() call.

        A terminated ledger's sign-out may run after the host already switched
        to another identity. It must then leave that identity's session and
        protection alone.
        """

        async def sign_out() -> None:
            if self.enabled and self._scope is not scope:
                logger.warning("sign_out_skipped_session_changed", user_id=user_id)
                return
            try:
                await self._external_sign_out()
            finally:
                if self._scope is scope:
                    self.disable()

        return sign_out

    # ── Host event dispatch ───────────────────────────────────────────────────

    def on_key(self, event: KeyEvent) -> None:
        if self.screenshot is not None:
            self.screenshot.handle_key(event)
        if self.copy_paste is not None:
            self.copy_paste.handle_key(event)

    def on_clipboard(self, event: ClipboardEvent) -> None:
        if self.copy_paste is not None:
            self.copy_paste.handle_clipboard(event)

    def on_visibility_change(self, hidden: bool) -> None:
        if self.focus is not None:
            self.focus.visibility_changed(hidden)

    def on_window_blur(self) -> None:
        if self.focus is not None:
            self.focus.window_blurred()

    def on_window_focus(self) -> None:
        if self.focus is not None:
            self.focus.window_focused()

    def on_geometry(self, sample: WindowGeometry) -> None:
        if self.focus is not None:
            self.focus.observe_geometry(sample)

    def acknowledge(self) -> bool:
        return self.ledger.acknowledge() if self.ledger is not None else False
