"""Lead lookups for the reveal operation.

Only the fields the reveal path needs are modelled: identity, assignment,
and the two PII columns. ``masked()`` yields the listing view.

Implementations:
  InMemoryLeadStore  — fixtures file / tests
  SupabaseLeadStore  — ``leads`` table via the shared AsyncClient
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from crmguard.constants import SUPABASE_TIMEOUT_S
from crmguard.disclosure.errors import RevealFailedError
from crmguard.disclosure.masking import mask_email, mask_phone
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Lead:
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    assigned_to: Optional[str] = None

    def field_value(self, field: str) -> Optional[str]:
        return self.email if field == "email" else self.phone

    def masked(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": mask_email(self.email),
            "phone": mask_phone(self.phone),
            "assigned_to": self.assigned_to,
        }


@runtime_checkable
class LeadStore(Protocol):
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        """Return the lead, or None if it does not exist.

        Raises:
            RevealFailedError: The store could not be reached.
        """
        ...


class InMemoryLeadStore:
    def __init__(self, leads: Iterable[Lead] = ()) -> None:
        self._leads: dict[str, Lead] = {lead.id: lead for lead in leads}

    @classmethod
    def from_fixtures(cls, raw: Optional[list[dict[str, Any]]]) -> "InMemoryLeadStore":
        return cls(
            Lead(
                id=str(item["id"]),
                name=item.get("name", ""),
                email=item.get("email"),
                phone=item.get("phone"),
                assigned_to=item.get("assigned_to"),
            )
            for item in raw or []
        )

    def add(self, lead: Lead) -> None:
        self._leads[lead.id] = lead

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        return self._leads.get(lead_id)


class SupabaseLeadStore:
    """Reads leads with the service-role client; row-level policies are bypassed
    here, so authorization is enforced by RevealService."""

    def __init__(self, client: Optional[Any], timeout_s: float = SUPABASE_TIMEOUT_S) -> None:
        self._client = client
        self._timeout_s = timeout_s

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        if self._client is None:
            raise RevealFailedError("Lead store unavailable")
        try:
            response = await asyncio.wait_for(
                self._client.table("leads")
                .select("id, name, email, phone, assigned_to")
                .eq("id", lead_id)
                .limit(1)
                .execute(),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            logger.error(
                "lead_lookup_failed",
                lead_id=lead_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise RevealFailedError("Lead lookup failed") from exc

        if not response.data:
            return None
        row = response.data[0]
        return Lead(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row.get("email"),
            phone=row.get("phone"),
            assigned_to=str(row["assigned_to"]) if row.get("assigned_to") else None,
        )
