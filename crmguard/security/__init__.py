"""Client-resident security monitoring: detectors, violation ledger, protection session."""

from crmguard.security.detectors import CopyPasteDetector, FocusDetector, ScreenshotDetector
from crmguard.security.events import ClipboardEvent, InputTarget, KeyEvent, WindowGeometry
from crmguard.security.ledger import LedgerState, OverlayReason, ViolationLedger, ViolationState
from crmguard.security.session import InMemoryDocument, ProtectionSession
from crmguard.security.signals import SecuritySignal, SignalKind

__all__ = [
    "ClipboardEvent",
    "CopyPasteDetector",
    "FocusDetector",
    "InMemoryDocument",
    "InputTarget",
    "KeyEvent",
    "LedgerState",
    "OverlayReason",
    "ProtectionSession",
    "ScreenshotDetector",
    "SecuritySignal",
    "SignalKind",
    "ViolationLedger",
    "ViolationState",
    "WindowGeometry",
]
