"""Unit tests for ProtectionSession — enable / disable lifecycle and event dispatch."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import RecordingAuditBackend
from crmguard.auth.identity import ROLE_ADMIN, Identity
from crmguard.config import SecurityConfig
from crmguard.security.events import ClipboardEvent, KeyEvent
from crmguard.security.ledger import LedgerState
from crmguard.security.session import NO_SELECT_STYLE_ID, InMemoryDocument, ProtectionSession

pytestmark = pytest.mark.asyncio

AGENT = Identity(user_id="agent-1", full_name="Alice Agent")
OTHER_AGENT = Identity(user_id="agent-2")
ADMIN = Identity(user_id="admin-1", role=ROLE_ADMIN)
INACTIVE = Identity(user_id="agent-3", active=False)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0  # every reading is past the screenshot debounce
        return self.now


def _session(audit: RecordingAuditBackend, sign_out: AsyncMock | None = None, **security) -> ProtectionSession:
    return ProtectionSession(
        audit=audit,
        sign_out=sign_out or AsyncMock(),
        security=SecurityConfig(**security),
        document=InMemoryDocument(),
        clock=FakeClock(),
    )


class TestEnable:
    async def test_agent_is_protected(self, audit: RecordingAuditBackend) -> None:
        session = _session(audit)
        assert session.enable(AGENT) is True
        assert session.enabled
        assert NO_SELECT_STYLE_ID in session.document.styles
        assert session.screenshot is not None and session.focus is not None and session.copy_paste is not None
        session.disable()

    @pytest.mark.parametrize("identity", [ADMIN, INACTIVE])
    async def test_exempt_identities_are_not_protected(
        self, audit: RecordingAuditBackend, identity: Identity
    ) -> None:
        session = _session(audit)
        assert session.enable(identity) is False
        assert not session.enabled
        assert session.document.styles == {}

    async def test_enable_is_idempotent_for_same_user(self, audit: RecordingAuditBackend) -> None:
        session = _session(audit)
        session.enable(AGENT)
        ledger = session.ledger
        assert session.enable(AGENT) is True
        assert session.ledger is ledger
        session.disable()

    async def test_switching_user_replaces_ledger(self, audit: RecordingAuditBackend) -> None:
        session = _session(audit)
        session.enable(AGENT)
        first = session.ledger
        session.enable(OTHER_AGENT)
        assert session.ledger is not first
        assert session.ledger.user_id == "agent-2"
        session.disable()

    async def test_becoming_admin_disables(self, audit: RecordingAuditBackend) -> None:
        session = _session(audit)
        session.enable(AGENT)
        session.enable(Identity(user_id="agent-1", role=ROLE_ADMIN))
        assert not session.enabled
        assert session.document.styles == {}


class TestDisable:
    async def test_disable_reverses_everything(self, audit: RecordingAuditBackend) -> None:
        session = _session(audit)
        session.enable(AGENT)
        session.disable()
        session.disable()  # idempotent
        assert not session.enabled
        assert session.document.styles == {}
        assert session.violation_state is None
        session.on_key(KeyEvent(key="PrintScreen"))
        await session.drain()
        assert audit.entries == []

    async def test_focus_grace_does_not_fire_after_disable(self, audit: RecordingAuditBackend) -> None:
        session = _session(audit, focus_grace_ms=10)
        session.enable(AGENT)
        session.on_window_blur()
        session.disable()
        await asyncio.sleep(0.04)
        assert audit.entries == []


class TestDispatch:
    async def test_events_reach_the_ledger(self, audit: RecordingAuditBackend) -> None:
        session = _session(audit)
        session.enable(AGENT)
        session.on_key(KeyEvent(key="PrintScreen"))
        session.on_key(KeyEvent(key="c", ctrl=True))
        session.on_clipboard(ClipboardEvent(kind="contextmenu"))
        await session.drain()
        assert session.violation_state.count == 3
        assert audit.actions() == ["screenshot_attempt", "copy_attempt_blocked", "copy_attempt_blocked"]
        assert session.acknowledge() is True
        session.disable()

    async def test_termination_signs_out_and_disables(self, audit: RecordingAuditBackend) -> None:
        sign_out = AsyncMock()
        session = _session(audit, sign_out=sign_out, max_violations=2, sign_out_delay_seconds=0.01)
        session.enable(AGENT)
        session.on_key(KeyEvent(key="PrintScreen"))
        session.on_key(KeyEvent(key="PrintScreen"))
        assert session.ledger.phase is LedgerState.TERMINATED
        await asyncio.sleep(0.05)
        await session.drain()
        assert sign_out.await_count == 1
        assert not session.enabled

    async def test_pending_sign_out_spares_the_next_user(self, audit: RecordingAuditBackend) -> None:
        sign_out = AsyncMock()
        session = _session(audit, sign_out=sign_out, max_violations=1, sign_out_delay_seconds=1.0)
        session.enable(AGENT)
        session.on_key(KeyEvent(key="PrintScreen"))
        first = session.ledger
        assert first.terminated

        session.enable(OTHER_AGENT)
        await asyncio.sleep(0.05)

        assert first.signed_out
        assert sign_out.await_count == 0
        assert session.enabled
        assert session.identity == OTHER_AGENT
        assert NO_SELECT_STYLE_ID in session.document.styles
        assert session.ledger.phase is LedgerState.NORMAL
        session.disable()

    async def test_disable_during_delay_still_signs_out(self, audit: RecordingAuditBackend) -> None:
        sign_out = AsyncMock()
        session = _session(audit, sign_out=sign_out, max_violations=1, sign_out_delay_seconds=1.0)
        session.enable(AGENT)
        session.on_key(KeyEvent(key="PrintScreen"))
        session.disable()
        await session.drain()
        assert sign_out.await_count == 1
        assert not session.enabled


class TestSingleton:
    async def test_install_replaces_and_disables_previous(self, audit: RecordingAuditBackend) -> None:
        first = ProtectionSession.install(audit=audit, sign_out=AsyncMock())
        first.enable(AGENT)
        second = ProtectionSession.install(audit=audit, sign_out=AsyncMock())
        assert ProtectionSession.current() is second
        assert not first.enabled
        ProtectionSession.uninstall()
        assert ProtectionSession.current() is None
