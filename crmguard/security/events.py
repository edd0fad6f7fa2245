"""Raw environment events fed into the detectors by the host.

The host (desktop shell, browser bridge, kiosk wrapper, test harness)
translates its native events into these dataclasses. ``prevent_default()``
reports whether the host managed to suppress the native action; a refusal
never stops detection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

TEXT_INPUT_TAGS: frozenset[str] = frozenset({"input", "textarea"})


@dataclass(frozen=True)
class InputTarget:
    """The element an event was dispatched to."""

    tag_name: str = "body"
    content_editable: bool = False

    @property
    def is_text_input(self) -> bool:
        return self.tag_name.lower() in TEXT_INPUT_TAGS or self.content_editable


BODY = InputTarget()


@dataclass
class _Suppressible:
    cancelable: bool = field(default=True, kw_only=True)
    default_prevented: bool = field(default=False, init=False)

    def prevent_default(self) -> bool:
        """Ask the host to suppress the native action. Returns False if refused."""
        if self.cancelable:
            self.default_prevented = True
        return self.default_prevented


@dataclass
class KeyEvent(_Suppressible):
    key: str
    code: str = ""
    ctrl: bool = False
    alt: bool = False
    shift: bool = False
    meta: bool = False
    phase: str = "keydown"  # keydown | keyup
    target: InputTarget = BODY

    def matches(self, name: str) -> bool:
        return self.key == name or self.code == name

    @property
    def modifiers(self) -> dict[str, bool]:
        return {"ctrl": self.ctrl, "alt": self.alt, "shift": self.shift, "meta": self.meta}


@dataclass
class ClipboardEvent(_Suppressible):
    kind: str  # copy | cut | paste | contextmenu
    target: InputTarget = BODY


@dataclass(frozen=True)
class WindowGeometry:
    """One sample of the outer (frame) and inner (viewport) window size."""

    outer_width: int
    outer_height: int
    inner_width: int
    inner_height: int

    @property
    def width_delta(self) -> int:
        return self.outer_width - self.inner_width

    @property
    def height_delta(self) -> int:
        return self.outer_height - self.inner_height

    def same_outer_size(self, other: Optional["WindowGeometry"]) -> bool:
        return (
            other is not None
            and other.outer_width == self.outer_width
            and other.outer_height == self.outer_height
        )
