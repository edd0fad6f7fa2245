"""Unit tests for MaskedField — reveal grants, auto-hide, clipboard guard and teardown."""

from __future__ import annotations

import asyncio
from typing import Optional
from unittest.mock import MagicMock

import pytest

from crmguard.disclosure.errors import RateLimitExceededError, RevealFailedError
from crmguard.disclosure.gateway import MaskedField, RevealOutcome
from crmguard.security.events import ClipboardEvent

pytestmark = pytest.mark.asyncio


class FakeClient:
    """RevealClient double; ``gate`` holds the call open until set."""

    def __init__(self, value: Optional[str] = "bob@corp.com", error: Optional[Exception] = None) -> None:
        self.value = value
        self.error = error
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def reveal(self, lead_id: str, field: str) -> Optional[str]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.value


def _field(client: FakeClient, **kwargs) -> MaskedField:
    kwargs.setdefault("notifier", MagicMock())
    return MaskedField("b*****@corp.com", "email", "lead-1", client, **kwargs)


class TestReveal:
    async def test_reveal_then_hide(self) -> None:
        field = _field(FakeClient())
        assert field.display_value == "b*****@corp.com"
        assert await field.reveal() is RevealOutcome.REVEALED
        assert field.revealed
        assert field.display_value == "bob@corp.com"
        assert field.remaining_seconds == 60
        assert field.grant is not None and field.grant.entity_id == "lead-1"
        assert field.hide() is RevealOutcome.HIDDEN
        assert field.display_value == "b*****@corp.com"
        field.close()

    async def test_toggle(self) -> None:
        field = _field(FakeClient())
        assert await field.toggle() is RevealOutcome.REVEALED
        assert await field.toggle() is RevealOutcome.HIDDEN
        field.close()

    async def test_already_revealed_does_not_call_again(self) -> None:
        client = FakeClient()
        field = _field(client)
        await field.reveal()
        assert await field.reveal() is RevealOutcome.REVEALED
        assert client.calls == 1
        field.close()

    async def test_empty_value_never_calls_server(self) -> None:
        client = FakeClient()
        field = MaskedField(None, "phone", "lead-1", client, notifier=MagicMock())
        assert field.display_value == "-"
        assert await field.reveal() is RevealOutcome.EMPTY
        assert client.calls == 0

    async def test_concurrent_reveal_is_busy(self) -> None:
        client = FakeClient()
        client.gate = asyncio.Event()
        field = _field(client)
        first = asyncio.create_task(field.reveal())
        await asyncio.sleep(0)
        assert field.loading
        assert await field.reveal() is RevealOutcome.BUSY
        client.gate.set()
        assert await first is RevealOutcome.REVEALED
        field.close()


class TestAutoHide:
    async def test_grant_expires(self) -> None:
        field = _field(FakeClient(), auto_hide_seconds=0.03)
        await field.reveal()
        assert field.grant.expires_at is not None
        await asyncio.sleep(0.06)
        assert not field.revealed
        assert field.display_value == "b*****@corp.com"
        field.close()

    async def test_countdown_ticks(self) -> None:
        field = _field(FakeClient(), auto_hide_seconds=3)
        await field.reveal()
        await asyncio.sleep(1.1)
        assert field.remaining_seconds == 2
        field.close()

    async def test_exempt_field_never_auto_hides(self) -> None:
        field = _field(FakeClient(), auto_hide_seconds=0.01, exempt=True)
        await field.reveal()
        assert field.grant.expires_at is None
        await asyncio.sleep(0.03)
        assert field.revealed
        field.close()


class TestFailures:
    async def test_rate_limit_reported_distinctly(self) -> None:
        notifier = MagicMock()
        field = _field(FakeClient(error=RateLimitExceededError(30, 20)), notifier=notifier)
        assert await field.reveal() is RevealOutcome.RATE_LIMITED
        assert field.exhausted
        assert not field.revealed
        notifier.warning.assert_called_once()
        notifier.error.assert_not_called()

    async def test_generic_failure(self) -> None:
        notifier = MagicMock()
        field = _field(FakeClient(error=RevealFailedError()), notifier=notifier)
        assert await field.reveal() is RevealOutcome.FAILED
        assert not field.exhausted
        notifier.error.assert_called_once()

    async def test_unexpected_client_error(self) -> None:
        field = _field(FakeClient(error=KeyError("boom")))
        assert await field.reveal() is RevealOutcome.FAILED
        assert not field.loading


class TestTeardown:
    async def test_result_after_close_is_discarded(self) -> None:
        client = FakeClient()
        client.gate = asyncio.Event()
        field = _field(client)
        pending = asyncio.create_task(field.reveal())
        await asyncio.sleep(0)
        field.close()
        client.gate.set()
        assert await pending is RevealOutcome.DISCARDED
        assert field.grant is None
        assert field.display_value == "b*****@corp.com"

    async def test_close_cancels_auto_hide(self) -> None:
        field = _field(FakeClient(), auto_hide_seconds=0.02)
        await field.reveal()
        field.close()
        assert field.grant is None
        assert await field.reveal() is RevealOutcome.DISCARDED


class TestClipboardGuard:
    async def test_blocks_copy_while_revealed(self) -> None:
        field = _field(FakeClient())
        hidden_copy = ClipboardEvent(kind="copy")
        assert field.guard_clipboard(hidden_copy) is False
        await field.reveal()
        for kind in ("copy", "cut", "contextmenu"):
            event = ClipboardEvent(kind=kind)
            assert field.guard_clipboard(event) is True
            assert event.default_prevented
        assert field.guard_clipboard(ClipboardEvent(kind="paste")) is False
        field.close()

    async def test_exempt_field_is_not_guarded(self) -> None:
        field = _field(FakeClient(), exempt=True)
        await field.reveal()
        assert field.guard_clipboard(ClipboardEvent(kind="copy")) is False
        field.close()
