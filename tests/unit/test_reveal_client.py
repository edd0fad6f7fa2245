"""Unit tests for HttpRevealClient / LocalRevealClient error mapping.

Uses httpx.MockTransport; no server is started.
"""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import RecordingAuditBackend
from crmguard.auth.identity import Identity
from crmguard.disclosure.client import HttpRevealClient, LocalRevealClient
from crmguard.disclosure.errors import (
    AccessDeniedError,
    AuthenticationRequiredError,
    LeadNotFoundError,
    RateLimitExceededError,
    RevealFailedError,
)
from crmguard.disclosure.leads import InMemoryLeadStore, Lead
from crmguard.disclosure.rate_limit import RevealRateCounter
from crmguard.disclosure.service import RevealService

pytestmark = pytest.mark.asyncio


def _client(handler) -> HttpRevealClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://crm.test")
    return HttpRevealClient("http://crm.test", token="tok-1", http_client=http)


class TestHttpRevealClient:
    async def test_success_returns_value(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"value": "bob@corp.com", "reveals_remaining": 19})

        value = await _client(handler).reveal("lead-1", "email")
        assert value == "bob@corp.com"
        assert seen == {
            "path": "/api/leads/lead-1/reveal",
            "auth": "Bearer tok-1",
            "body": {"field": "email"},
        }

    async def test_429_maps_to_rate_limit_with_retry_after(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429,
                headers={"Retry-After": "42"},
                json={"error": {"code": "rate_limit_exceeded", "message": "slow down"}, "limit": 20},
            )

        with pytest.raises(RateLimitExceededError) as exc_info:
            await _client(handler).reveal("lead-1", "email")
        assert exc_info.value.retry_after_seconds == 42
        assert exc_info.value.limit == 20

    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (401, AuthenticationRequiredError),
            (403, AccessDeniedError),
            (404, LeadNotFoundError),
            (500, RevealFailedError),
            (503, RevealFailedError),
        ],
    )
    async def test_status_mapping(self, status: int, error_cls: type) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json={"error": {"code": "x", "message": "server says no"}})

        with pytest.raises(error_cls) as exc_info:
            await _client(handler).reveal("lead-1", "email")
        assert exc_info.value.message == "server says no"

    async def test_transport_error_is_retryable_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RevealFailedError) as exc_info:
            await _client(handler).reveal("lead-1", "email")
        assert exc_info.value.retryable


class TestLocalRevealClient:
    async def test_calls_service_as_identity(self, audit: RecordingAuditBackend) -> None:
        service = RevealService(
            InMemoryLeadStore([Lead(id="lead-1", name="Bob", phone="5551234567", assigned_to="agent-1")]),
            audit,
            RevealRateCounter(max_reveals=5, window_seconds=60),
        )
        client = LocalRevealClient(service, Identity(user_id="agent-1"))
        assert await client.reveal("lead-1", "phone") == "5551234567"
        assert audit.actions() == ["revealed_phone"]
