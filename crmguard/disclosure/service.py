"""RevealService — the server-side reveal operation.

Order of checks for ``reveal(identity, lead_id, field)``:
  1. identity must be active                → AccessDeniedError
  2. field must be 'email' or 'phone'       → InvalidFieldError
  3. lead must exist                        → LeadNotFoundError
  4. admin: any lead; agent: assigned only  → AccessDeniedError
  5. per-user rolling quota, check+increment → RateLimitExceededError
  6. append a ``revealed_<field>`` audit entry and return the value

Requests rejected in steps 1-4 never consume quota. A rate-limited attempt
appends a ``reveal_rate_limited`` entry (which does not match the
``revealed_`` prefix the suspicious-activity scan counts). A failed audit
write is logged and the value is still returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from crmguard.audit.models import ACTION_REVEAL_RATE_LIMITED, ENTITY_LEAD, AuditEntry, utcnow
from crmguard.audit.protocol import AuditBackend
from crmguard.auth.identity import Identity
from crmguard.constants import AUTO_HIDE_SECONDS, REVEAL_ACTION_PREFIX, REVEALABLE_FIELDS
from crmguard.disclosure.errors import (
    AccessDeniedError,
    InvalidFieldError,
    LeadNotFoundError,
    RateLimitExceededError,
    RevealError,
    RevealFailedError,
)
from crmguard.disclosure.leads import LeadStore
from crmguard.disclosure.rate_limit import RateDecision, RevealRateCounter
from crmguard.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RevealResult:
    value: Optional[str]
    reveals_remaining: int
    audit_id: str
    audited: bool


class RevealService:
    def __init__(
        self,
        leads: LeadStore,
        audit: AuditBackend,
        counter: RevealRateCounter,
        auto_hide_seconds: int = AUTO_HIDE_SECONDS,
    ) -> None:
        self._leads = leads
        self._audit = audit
        self._counter = counter
        self.auto_hide_seconds = auto_hide_seconds

    @property
    def counter(self) -> RevealRateCounter:
        return self._counter

    async def quota(self, identity: Identity) -> RateDecision:
        return await self._counter.peek(identity.user_id)

    async def reveal(self, identity: Identity, lead_id: str, field: str) -> RevealResult:
        """Disclose one PII field of one lead to ``identity``.

        Raises:
            RevealError subclasses; anything unexpected is wrapped in RevealFailedError.
        """
        with PerformanceLogger("reveal", logger=logger):
            try:
                return await self._reveal(identity, lead_id, field)
            except RevealError:
                raise
            except Exception as exc:
                logger.error(
                    "reveal_unexpected_error",
                    user_id=identity.user_id,
                    lead_id=lead_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise RevealFailedError() from exc

    async def _reveal(self, identity: Identity, lead_id: str, field: str) -> RevealResult:
        if not identity.active:
            raise AccessDeniedError("Account deactivated")
        if field not in REVEALABLE_FIELDS:
            raise InvalidFieldError()

        lead = await self._leads.get_lead(lead_id)
        if lead is None:
            raise LeadNotFoundError()

        if not identity.is_admin and lead.assigned_to != identity.user_id:
            logger.warning(
                "reveal_access_denied",
                user_id=identity.user_id,
                lead_id=lead_id,
                field=field,
            )
            raise AccessDeniedError()

        decision = await self._counter.acquire(identity.user_id)
        if not decision.allowed:
            await self._audit.log_event(
                AuditEntry(
                    user_id=identity.user_id,
                    action=ACTION_REVEAL_RATE_LIMITED,
                    entity_type=ENTITY_LEAD,
                    entity_id=lead_id,
                    details={
                        "field_type": field,
                        "limit": self._counter.max_reveals,
                        "retry_after_seconds": decision.retry_after_seconds,
                    },
                )
            )
            logger.warning(
                "reveal_rate_limited",
                user_id=identity.user_id,
                lead_id=lead_id,
                retry_after_s=decision.retry_after_seconds,
            )
            raise RateLimitExceededError(decision.retry_after_seconds, self._counter.max_reveals)

        entry = AuditEntry(
            user_id=identity.user_id,
            action=f"{REVEAL_ACTION_PREFIX}{field}",
            entity_type=ENTITY_LEAD,
            entity_id=lead_id,
            details={
                "field_type": field,
                "timestamp": utcnow().isoformat(),
                "source": "server",
                "reveals_remaining": decision.remaining,
            },
        )
        audited = await self._audit.log_event(entry)
        if not audited:
            logger.error(
                "reveal_audit_write_failed",
                user_id=identity.user_id,
                lead_id=lead_id,
                entry_id=entry.id,
            )

        logger.info(
            "pii_revealed",
            user_id=identity.user_id,
            lead_id=lead_id,
            field=field,
            reveals_remaining=decision.remaining,
        )
        return RevealResult(
            value=lead.field_value(field),
            reveals_remaining=decision.remaining,
            audit_id=entry.id,
            audited=audited,
        )
