"""Unit tests for RevealService — authorization, quota and audit ordering."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import RecordingAuditBackend
from crmguard.auth.identity import ROLE_ADMIN, Identity
from crmguard.disclosure.errors import (
    AccessDeniedError,
    InvalidFieldError,
    LeadNotFoundError,
    RateLimitExceededError,
    RevealFailedError,
)
from crmguard.disclosure.leads import InMemoryLeadStore, Lead
from crmguard.disclosure.rate_limit import RevealRateCounter
from crmguard.disclosure.service import RevealService

pytestmark = pytest.mark.asyncio

AGENT = Identity(user_id="agent-1")
OTHER_AGENT = Identity(user_id="agent-2")
ADMIN = Identity(user_id="admin-1", role=ROLE_ADMIN)

LEAD = Lead(id="lead-1", name="Bob Buyer", email="bob@corp.com", phone="5551234567", assigned_to="agent-1")


@pytest.fixture
def service(audit: RecordingAuditBackend) -> RevealService:
    return RevealService(
        InMemoryLeadStore([LEAD]),
        audit,
        RevealRateCounter(max_reveals=2, window_seconds=3600),
    )


class TestRevealSuccess:
    async def test_assigned_agent_gets_value_and_audit_row(
        self, service: RevealService, audit: RecordingAuditBackend
    ) -> None:
        result = await service.reveal(AGENT, "lead-1", "email")
        assert result.value == "bob@corp.com"
        assert result.reveals_remaining == 1
        assert result.audited

        [entry] = audit.entries
        assert entry.id == result.audit_id
        assert entry.action == "revealed_email"
        assert entry.entity_type == "lead"
        assert entry.entity_id == "lead-1"
        assert entry.details["field_type"] == "email"
        assert entry.details["source"] == "server"
        assert "bob@corp.com" not in str(entry.details)

    async def test_admin_may_reveal_any_lead(self, service: RevealService) -> None:
        result = await service.reveal(ADMIN, "lead-1", "phone")
        assert result.value == "5551234567"

    async def test_failed_audit_write_still_returns_value(
        self, service: RevealService, audit: RecordingAuditBackend
    ) -> None:
        audit.fail_writes = True
        result = await service.reveal(AGENT, "lead-1", "email")
        assert result.value == "bob@corp.com"
        assert not result.audited


class TestRevealRejections:
    async def test_unassigned_agent_denied_without_consuming_quota(self, service: RevealService) -> None:
        with pytest.raises(AccessDeniedError) as exc_info:
            await service.reveal(OTHER_AGENT, "lead-1", "email")
        assert exc_info.value.status_code == 403
        assert (await service.quota(OTHER_AGENT)).remaining == 2

    async def test_inactive_identity_denied(self, service: RevealService) -> None:
        with pytest.raises(AccessDeniedError):
            await service.reveal(Identity(user_id="agent-1", active=False), "lead-1", "email")

    async def test_invalid_field(self, service: RevealService) -> None:
        with pytest.raises(InvalidFieldError) as exc_info:
            await service.reveal(AGENT, "lead-1", "ssn")
        assert exc_info.value.status_code == 400

    async def test_missing_lead(self, service: RevealService) -> None:
        with pytest.raises(LeadNotFoundError):
            await service.reveal(AGENT, "lead-404", "email")
        assert (await service.quota(AGENT)).remaining == 2

    async def test_quota_exhaustion(self, service: RevealService, audit: RecordingAuditBackend) -> None:
        await service.reveal(AGENT, "lead-1", "email")
        await service.reveal(AGENT, "lead-1", "phone")
        with pytest.raises(RateLimitExceededError) as exc_info:
            await service.reveal(AGENT, "lead-1", "email")
        err = exc_info.value
        assert err.status_code == 429
        assert err.limit == 2
        assert err.retry_after_seconds >= 1
        assert not err.retryable
        assert audit.actions() == ["revealed_email", "revealed_phone", "reveal_rate_limited"]

    async def test_store_failure_is_wrapped(self, audit: RecordingAuditBackend) -> None:
        leads = AsyncMock()
        leads.get_lead.side_effect = ConnectionError("db down")
        service = RevealService(leads, audit, RevealRateCounter(max_reveals=2, window_seconds=60))
        with pytest.raises(RevealFailedError) as exc_info:
            await service.reveal(AGENT, "lead-1", "email")
        assert exc_info.value.retryable
        assert audit.entries == []
