"""Unit tests for the lead stores."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from crmguard.disclosure.errors import RevealFailedError
from crmguard.disclosure.leads import InMemoryLeadStore, Lead, LeadStore, SupabaseLeadStore


def _client(data: list[dict] | None = None, error: Exception | None = None) -> MagicMock:
    chain = MagicMock()
    for name in ("select", "eq", "limit"):
        getattr(chain, name).return_value = chain
    response = MagicMock()
    response.data = data or []
    chain.execute = AsyncMock(side_effect=error) if error else AsyncMock(return_value=response)
    client = MagicMock()
    client.table.return_value = chain
    return client


class TestLead:
    def test_masked_view_hides_pii(self) -> None:
        lead = Lead(id="lead-1", name="Bob Buyer", email="bob@corp.com", phone="5551234567")
        masked = lead.masked()
        assert "bob@corp.com" not in masked.values()
        assert "5551234567" not in masked.values()
        assert masked["name"] == "Bob Buyer"

    def test_field_value(self) -> None:
        lead = Lead(id="lead-1", name="Bob", email="bob@corp.com", phone="555")
        assert lead.field_value("email") == "bob@corp.com"
        assert lead.field_value("phone") == "555"


class TestInMemoryLeadStore:
    async def test_fixtures(self) -> None:
        store = InMemoryLeadStore.from_fixtures([{"id": 7, "name": "Bob", "phone": "555", "assigned_to": "agent-1"}])
        assert isinstance(store, LeadStore)
        lead = await store.get_lead("7")
        assert lead is not None and lead.assigned_to == "agent-1"
        assert await store.get_lead("8") is None


class TestSupabaseLeadStore:
    async def test_returns_lead(self) -> None:
        client = _client([{"id": 7, "name": "Bob", "email": "bob@corp.com", "phone": None, "assigned_to": 3}])
        lead = await SupabaseLeadStore(client).get_lead("7")
        assert lead == Lead(id="7", name="Bob", email="bob@corp.com", phone=None, assigned_to="3")
        client.table.assert_called_once_with("leads")
        client.table.return_value.eq.assert_called_once_with("id", "7")

    async def test_missing_lead_is_none(self) -> None:
        assert await SupabaseLeadStore(_client([])).get_lead("7") is None

    async def test_unassigned_lead(self) -> None:
        client = _client([{"id": "lead-1", "name": None, "assigned_to": None}])
        lead = await SupabaseLeadStore(client).get_lead("lead-1")
        assert lead is not None
        assert lead.assigned_to is None
        assert lead.name == ""

    async def test_failure_is_retryable(self) -> None:
        store = SupabaseLeadStore(_client(error=ConnectionError("unreachable")))
        with pytest.raises(RevealFailedError) as exc_info:
            await store.get_lead("7")
        assert exc_info.value.retryable

    async def test_no_client(self) -> None:
        with pytest.raises(RevealFailedError):
            await SupabaseLeadStore(None).get_lead("7")
