"""Reveal clients — how a MaskedField reaches the server-side reveal operation.

  HttpRevealClient  — POST /api/leads/{lead_id}/reveal over httpx
  LocalRevealClient — in-process call into a RevealService (embedding hosts, tests)

Both raise the RevealError taxonomy so the view can tell a rate-limit
failure from a generic one.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx

from crmguard.auth.identity import Identity
from crmguard.constants import ALERT_HTTP_TIMEOUT_S
from crmguard.disclosure.errors import (
    AccessDeniedError,
    AuthenticationRequiredError,
    InvalidFieldError,
    LeadNotFoundError,
    RateLimitExceededError,
    RevealError,
    RevealFailedError,
)
from crmguard.disclosure.service import RevealService
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

_STATUS_ERRORS: dict[int, type[RevealError]] = {
    400: InvalidFieldError,
    401: AuthenticationRequiredError,
    403: AccessDeniedError,
    404: LeadNotFoundError,
}


class RevealClient(Protocol):
    async def reveal(self, lead_id: str, field: str) -> Optional[str]:
        """Return the unmasked value.

        Raises:
            RateLimitExceededError: Quota spent. Do not retry automatically.
            RevealError: Any other failure.
        """
        ...


class HttpRevealClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = ALERT_HTTP_TIMEOUT_S,
    ) -> None:
        self._token = token
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout_s)

    async def reveal(self, lead_id: str, field: str) -> Optional[str]:
        try:
            response = await self._http.post(
                f"/api/leads/{lead_id}/reveal",
                json={"field": field},
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("reveal_request_failed", lead_id=lead_id, error=str(exc))
            raise RevealFailedError("Reveal request failed") from exc

        if response.status_code == 200:
            return response.json().get("value")

        message = _error_message(response)
        if response.status_code == 429:
            body = _json_or_empty(response)
            retry_after = response.headers.get("Retry-After") or body.get("retry_after_seconds") or 60
            raise RateLimitExceededError(int(retry_after), int(body.get("limit") or 0))

        error_cls = _STATUS_ERRORS.get(response.status_code, RevealFailedError)
        raise error_cls(message)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


class LocalRevealClient:
    def __init__(self, service: RevealService, identity: Identity) -> None:
        self._service = service
        self._identity = identity

    async def reveal(self, lead_id: str, field: str) -> Optional[str]:
        result = await self._service.reveal(self._identity, lead_id, field)
        return result.value


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(response: httpx.Response) -> Optional[str]:
    error = _json_or_empty(response).get("error")
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return error
    return None
