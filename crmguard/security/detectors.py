"""Signal detectors — raw environment events in, SecuritySignals out.

Three independent observers, none sharing state beyond their own timestamps:

  ScreenshotDetector — print-screen / snip shortcut table, 500 ms debounce
  FocusDetector      — visibility + window focus with a grace timer, plus a
                       once-per-second outer/inner size poll for docked
                       inspector panels
  CopyPasteDetector  — copy / cut / paste / select-all / context menu outside
                       text inputs

Failure semantics: detectors never raise. A refused ``prevent_default()``
still yields the signal (with ``suppressed=False`` in its metadata), and a
failing sink is logged and swallowed.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

from crmguard.constants import DEVTOOLS_POLL_SECONDS, DEVTOOLS_THRESHOLD_PX, FOCUS_GRACE_MS, SCREENSHOT_DEBOUNCE_MS
from crmguard.security.events import ClipboardEvent, KeyEvent, WindowGeometry
from crmguard.security.signals import SecuritySignal, SignalKind, SignalSink
from crmguard.utils.logger import get_logger
from crmguard.utils.timers import TimerHandle, TimerScope

logger = get_logger(__name__)


class _Detector:
    """Shared emit path: build the signal, hand it to the sink, never raise."""

    name = "detector"

    def __init__(self, sink: SignalSink) -> None:
        self._sink = sink
        self.enabled = True

    def _emit(self, kind: SignalKind, **metadata: Any) -> SecuritySignal:
        signal = SecuritySignal(kind=kind, metadata=metadata)
        try:
            self._sink(signal)
        except Exception as exc:
            logger.error(
                "detector_sink_failed",
                detector=self.name,
                kind=kind.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return signal


# ─── ScreenshotDetector ───────────────────────────────────────────────────────

# (key, ctrl, alt, shift, meta)
SCREENSHOT_COMBOS: tuple[tuple[str, bool, bool, bool, bool], ...] = (
    ("PrintScreen", False, False, False, False),
    ("PrintScreen", False, True, False, False),   # Alt+PrintScreen
    ("s", True, False, True, False),              # Ctrl+Shift+S (Windows snip)
    ("S", True, False, True, False),
    ("3", False, False, True, True),              # Cmd+Shift+3 (macOS)
    ("4", False, False, True, True),              # Cmd+Shift+4
    ("5", False, False, True, True),              # Cmd+Shift+5
)


def is_screenshot_combo(event: KeyEvent) -> bool:
    if event.matches("PrintScreen"):
        # PrintScreen counts with any modifier combination.
        return True
    return any(
        event.matches(key)
        and event.ctrl == ctrl
        and event.alt == alt
        and event.shift == shift
        and event.meta == meta
        for key, ctrl, alt, shift, meta in SCREENSHOT_COMBOS
    )


class ScreenshotDetector(_Detector):
    """Watches key-down and key-up for screenshot shortcuts."""

    name = "screenshot"

    def __init__(
        self,
        sink: SignalSink,
        debounce_ms: int = SCREENSHOT_DEBOUNCE_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(sink)
        self._debounce_s = debounce_ms / 1000.0
        self._clock = clock
        self._last_accepted: Optional[float] = None

    def handle_key(self, event: KeyEvent) -> Optional[SecuritySignal]:
        if not self.enabled:
            return None
        try:
            now = self._clock()
            if self._last_accepted is not None and now - self._last_accepted < self._debounce_s:
                return None
            if not is_screenshot_combo(event):
                return None
            self._last_accepted = now
            suppressed = event.prevent_default()
        except Exception as exc:
            logger.error("screenshot_detector_failed", error=str(exc), error_type=type(exc).__name__)
            return None
        return self._emit(
            SignalKind.SCREENSHOT,
            key=event.key or event.code,
            phase=event.phase,
            modifiers=event.modifiers,
            suppressed=suppressed,
        )


# ─── FocusDetector ────────────────────────────────────────────────────────────


class FocusDetector(_Detector):
    """Visibility / focus loss with a grace period, and the docked-inspector heuristic.

    The dev-tools heuristic is edge-triggered: it fires once when the
    outer/inner delta first exceeds the threshold with an unchanged outer
    size, and re-arms only after the delta falls back under the threshold.
    """

    name = "focus"

    def __init__(
        self,
        sink: SignalSink,
        scope: TimerScope,
        on_restored: Optional[Callable[[], None]] = None,
        grace_ms: int = FOCUS_GRACE_MS,
        threshold_px: int = DEVTOOLS_THRESHOLD_PX,
        poll_seconds: float = DEVTOOLS_POLL_SECONDS,
        geometry_source: Optional[Callable[[], Optional[WindowGeometry]]] = None,
    ) -> None:
        super().__init__(sink)
        self._scope = scope
        self._on_restored = on_restored
        self._grace_s = grace_ms / 1000.0
        self._threshold_px = threshold_px
        self._poll_seconds = poll_seconds
        self._geometry_source = geometry_source
        self._grace: Optional[TimerHandle] = None
        self._poll: Optional[TimerHandle] = None
        self._last_geometry: Optional[WindowGeometry] = None
        self._devtools_docked = False
        self.blurred = False

    @property
    def grace_pending(self) -> bool:
        return self._grace is not None and self._grace.active

    def start(self) -> None:
        """Begin polling the geometry source, if the host provided one."""
        if self._geometry_source is not None and self._poll is None:
            # Baseline outer size, so the first poll can already detect docking.
            self._last_geometry = self._read_geometry()
            self._poll = self._scope.call_every(
                self._poll_seconds, self._poll_geometry, name="devtools_poll"
            )

    def stop(self) -> None:
        self._cancel_grace()
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None

    # ── Host callbacks ────────────────────────────────────────────────────────

    def visibility_changed(self, hidden: bool) -> None:
        if not self.enabled:
            return
        if hidden:
            self._arm_grace(SignalKind.TAB_SWITCH)
        else:
            self.focus_restored()

    def window_blurred(self) -> None:
        if self.enabled:
            self._arm_grace(SignalKind.FOCUS_LOST)

    def window_focused(self) -> None:
        if self.enabled:
            self.focus_restored()

    def focus_restored(self) -> None:
        self._cancel_grace()
        self.blurred = False
        if self._on_restored is not None:
            try:
                self._on_restored()
            except Exception as exc:
                logger.error("focus_restore_callback_failed", error=str(exc), error_type=type(exc).__name__)

    def observe_geometry(self, sample: WindowGeometry) -> Optional[SecuritySignal]:
        if not self.enabled:
            return None
        docked = (
            sample.width_delta > self._threshold_px
            or sample.height_delta > self._threshold_px
        )
        steady = sample.same_outer_size(self._last_geometry)
        self._last_geometry = sample

        if not docked:
            self._devtools_docked = False
            return None
        if not steady or self._devtools_docked:
            return None

        self._devtools_docked = True
        self.blurred = True
        return self._emit(
            SignalKind.DEV_TOOLS_OPENED,
            width_delta=sample.width_delta,
            height_delta=sample.height_delta,
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    def _read_geometry(self) -> Optional[WindowGeometry]:
        try:
            return self._geometry_source() if self._geometry_source else None
        except Exception as exc:
            logger.warning("window_geometry_unavailable", error=str(exc))
            return None

    def _poll_geometry(self) -> None:
        sample = self._read_geometry()
        if sample is not None:
            self.observe_geometry(sample)

    def _arm_grace(self, kind: SignalKind) -> None:
        self._cancel_grace()
        if self._scope.closed:
            return
        self._grace = self._scope.call_later(self._grace_s, self._declare, kind, name="focus_grace")

    def _cancel_grace(self) -> None:
        if self._grace is not None:
            self._grace.cancel()
            self._grace = None

    def _declare(self, kind: SignalKind) -> None:
        self._grace = None
        self.blurred = True
        self._emit(kind)


# ─── CopyPasteDetector ────────────────────────────────────────────────────────

_SHORTCUT_KINDS: dict[str, SignalKind] = {
    "c": SignalKind.COPY,
    "x": SignalKind.CUT,
    "v": SignalKind.PASTE,
    "a": SignalKind.SELECT_ALL,
}

_CLIPBOARD_KINDS: dict[str, SignalKind] = {
    "copy": SignalKind.COPY,
    "cut": SignalKind.CUT,
    "paste": SignalKind.PASTE,
    "contextmenu": SignalKind.RIGHT_CLICK,
}


class CopyPasteDetector(_Detector):
    """Blocks clipboard shortcuts and events outside text inputs.

    With ``allow_in_inputs`` (the default) text inputs behave normally.
    Paste into a text input is always allowed.
    """

    name = "copy_paste"

    def __init__(self, sink: SignalSink, allow_in_inputs: bool = True) -> None:
        super().__init__(sink)
        self.allow_in_inputs = allow_in_inputs

    def handle_key(self, event: KeyEvent) -> Optional[SecuritySignal]:
        if not self.enabled or event.phase != "keydown":
            return None
        if not (event.ctrl or event.meta):
            return None
        kind = _SHORTCUT_KINDS.get(event.key.lower()) if event.key else None
        if kind is None:
            return None
        return self._block(kind, event, via="keyboard")

    def handle_clipboard(self, event: ClipboardEvent) -> Optional[SecuritySignal]:
        if not self.enabled:
            return None
        kind = _CLIPBOARD_KINDS.get(event.kind)
        if kind is None:
            return None
        return self._block(kind, event, via="event")

    def _block(self, kind: SignalKind, event: Any, via: str) -> Optional[SecuritySignal]:
        in_input = event.target.is_text_input
        if in_input and (self.allow_in_inputs or kind is SignalKind.PASTE):
            return None
        try:
            suppressed = event.prevent_default()
        except Exception as exc:
            logger.warning("copy_suppression_failed", kind=kind.value, error=str(exc))
            suppressed = False
        return self._emit(kind, via=via, suppressed=suppressed)
