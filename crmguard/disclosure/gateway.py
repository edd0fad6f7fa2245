"""MaskedField — client-side view of one sensitive value.

Shows the server-masked value until the user explicitly reveals it. A
successful reveal creates a RevealGrant that lives for ``auto_hide_seconds``
with a per-second countdown, then reverts to the masked value. Manual hide
and ``close()`` destroy the grant immediately.

While revealed, the field guards its own container: copy, cut and the
context menu are blocked even if the document-wide protection is off.

Rate-limit failures are reported distinctly (``RevealOutcome.RATE_LIMITED``)
and mark the control exhausted until the server's retry-after elapses. The
mark is cosmetic: every reveal still round-trips to the server.

Reveal calls are not cancelled by ``close()``. A result arriving after the
view closed is discarded (``RevealOutcome.DISCARDED``).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from crmguard.audit.models import utcnow
from crmguard.constants import AUTO_HIDE_SECONDS
from crmguard.disclosure.client import RevealClient
from crmguard.disclosure.errors import RateLimitExceededError, RevealError
from crmguard.security.events import ClipboardEvent
from crmguard.security.ledger import LoggingNotifier, Notifier
from crmguard.utils.logger import get_logger
from crmguard.utils.timers import TimerHandle, TimerScope
from crmguard.utils.ulid import generate_ulid

logger = get_logger(__name__)

_GUARDED_CLIPBOARD_KINDS = frozenset({"copy", "cut", "contextmenu"})


class RevealOutcome(str, Enum):
    REVEALED = "revealed"
    HIDDEN = "hidden"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    EMPTY = "empty"
    BUSY = "busy"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class RevealGrant:
    field_id: str
    entity_id: str
    revealed_value: Optional[str]
    expires_at: Optional[datetime]


class MaskedField:
    def __init__(
        self,
        masked_value: Optional[str],
        field_kind: str,
        entity_id: str,
        client: RevealClient,
        auto_hide_seconds: int = AUTO_HIDE_SECONDS,
        exempt: bool = False,
        notifier: Optional[Notifier] = None,
        field_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.masked_value = masked_value
        self.field_kind = field_kind
        self.entity_id = entity_id
        self.field_id = field_id or generate_ulid()
        self.exempt = exempt
        self._client = client
        self._auto_hide_seconds = auto_hide_seconds
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._scope = TimerScope(f"masked_field:{self.field_id}")
        self._grant: Optional[RevealGrant] = None
        self._hide_timer: Optional[TimerHandle] = None
        self._countdown: Optional[TimerHandle] = None
        self._remaining_seconds = 0
        self._loading = False
        self._exhausted_until: Optional[float] = None

    # ── View state ────────────────────────────────────────────────────────────

    @property
    def grant(self) -> Optional[RevealGrant]:
        return self._grant

    @property
    def revealed(self) -> bool:
        return self._grant is not None

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def closed(self) -> bool:
        return self._scope.closed

    @property
    def remaining_seconds(self) -> int:
        return self._remaining_seconds if self.revealed else 0

    @property
    def exhausted(self) -> bool:
        return self._exhausted_until is not None and self._clock() < self._exhausted_until

    @property
    def display_value(self) -> str:
        if not self.masked_value:
            return "-"
        if self._grant is not None and self._grant.revealed_value:
            return self._grant.revealed_value
        return self.masked_value

    # ── Actions ───────────────────────────────────────────────────────────────

    async def toggle(self) -> RevealOutcome:
        if self.revealed:
            return self.hide()
        return await self.reveal()

    async def reveal(self) -> RevealOutcome:
        if self.closed:
            return RevealOutcome.DISCARDED
        if not self.masked_value:
            return RevealOutcome.EMPTY
        if self._loading:
            return RevealOutcome.BUSY
        if self.revealed:
            return RevealOutcome.REVEALED

        self._loading = True
        try:
            value = await self._client.reveal(self.entity_id, self.field_kind)
        except RateLimitExceededError as exc:
            if self.closed:
                return RevealOutcome.DISCARDED
            self._exhausted_until = self._clock() + exc.retry_after_seconds
            self._notifier.warning(
                "Reveal limit reached",
                f"Try again in {exc.retry_after_seconds}s.",
            )
            return RevealOutcome.RATE_LIMITED
        except RevealError as exc:
            if self.closed:
                return RevealOutcome.DISCARDED
            logger.warning("reveal_failed", field_id=self.field_id, code=exc.code, error=exc.message)
            self._notifier.error("Reveal failed", exc.message)
            return RevealOutcome.FAILED
        except Exception as exc:
            if self.closed:
                return RevealOutcome.DISCARDED
            logger.error(
                "reveal_client_error",
                field_id=self.field_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._notifier.error("Reveal failed", "Something went wrong. Please try again.")
            return RevealOutcome.FAILED
        finally:
            self._loading = False

        if self.closed:
            logger.debug("reveal_result_discarded", field_id=self.field_id)
            return RevealOutcome.DISCARDED

        self._exhausted_until = None
        self._start_grant(value)
        return RevealOutcome.REVEALED

    def hide(self) -> RevealOutcome:
        self._cancel_timers()
        self._grant = None
        self._remaining_seconds = 0
        return RevealOutcome.HIDDEN

    def guard_clipboard(self, event: ClipboardEvent) -> bool:
        """Block copy / cut / context menu on the revealed value. Returns True if blocked."""
        if not self.revealed or self.exempt or event.kind not in _GUARDED_CLIPBOARD_KINDS:
            return False
        event.prevent_default()
        return True

    def close(self) -> None:
        """Tear down the view: cancel timers and drop the grant."""
        self._scope.close()
        self._hide_timer = None
        self._countdown = None
        self._grant = None
        self._remaining_seconds = 0

    # ── Internals ─────────────────────────────────────────────────────────────

    def _start_grant(self, value: Optional[str]) -> None:
        auto_hide = self._auto_hide_seconds if not self.exempt else 0
        expires_at = utcnow() + timedelta(seconds=auto_hide) if auto_hide > 0 else None
        self._grant = RevealGrant(
            field_id=self.field_id,
            entity_id=self.entity_id,
            revealed_value=value,
            expires_at=expires_at,
        )
        if auto_hide > 0:
            self._remaining_seconds = auto_hide
            self._countdown = self._scope.call_every(1.0, self._tick, name="countdown")
            self._hide_timer = self._scope.call_later(auto_hide, self._expire, name="auto_hide")

    def _tick(self) -> None:
        self._remaining_seconds = max(self._remaining_seconds - 1, 0)

    def _expire(self) -> None:
        self._hide_timer = None
        self.hide()
        logger.debug("reveal_grant_expired", field_id=self.field_id)

    def _cancel_timers(self) -> None:
        for handle in (self._hide_timer, self._countdown):
            if handle is not None:
                handle.cancel()
        self._hide_timer = None
        self._countdown = None
